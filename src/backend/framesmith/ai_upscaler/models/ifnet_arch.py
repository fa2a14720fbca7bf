"""
IFNet architecture for Practical-RIFE v4.25 weights.

Intermediate flow estimation network: four coarse-to-fine IFBlocks predict
bidirectional flow plus a fusion mask for an arbitrary timestep. The timestep is
passed as a per-pixel tensor, so one forward pass can evaluate a whole batch of
phases for the same frame pair.
"""

import logging
from pathlib import Path
from typing import Dict, Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

logger = logging.getLogger(__name__)


def conv(in_planes, out_planes, kernel_size=3, stride=1, padding=1, dilation=1):
    return nn.Sequential(
        nn.Conv2d(in_planes, out_planes, kernel_size=kernel_size, stride=stride,
                  padding=padding, dilation=dilation, bias=True),
        nn.PReLU(out_planes)
    )


class IFBlock(nn.Module):
    def __init__(self, in_planes, c=64):
        super().__init__()
        self.conv0 = nn.Sequential(
            conv(in_planes, c // 2, 3, 2, 1),
            conv(c // 2, c, 3, 2, 1),
        )
        self.convblock = nn.Sequential(*[conv(c, c) for _ in range(8)])
        self.lastconv = nn.ConvTranspose2d(c, 5, 4, 2, 1)

    def forward(self, x, flow=None, scale=1):
        x = F.interpolate(x, scale_factor=1. / scale, mode="bilinear", align_corners=False)
        if flow is not None:
            flow = F.interpolate(flow, scale_factor=1. / scale, mode="bilinear", align_corners=False) / scale
            x = torch.cat((x, flow), 1)
        feat = self.conv0(x)
        feat = self.convblock(feat) + feat
        tmp = self.lastconv(feat)
        tmp = F.interpolate(tmp, scale_factor=scale * 2, mode="bilinear", align_corners=False)
        flow = tmp[:, :4] * scale * 2
        mask = tmp[:, 4:5]
        return flow, mask


_grid_cache: Dict[Tuple[str, torch.Size], torch.Tensor] = {}


def warp(ten_input, ten_flow):
    key = (str(ten_flow.device), ten_flow.size())
    if key not in _grid_cache:
        horizontal = torch.linspace(-1.0, 1.0, ten_flow.shape[3], device=ten_flow.device).view(
            1, 1, 1, ten_flow.shape[3]).expand(ten_flow.shape[0], -1, ten_flow.shape[2], -1)
        vertical = torch.linspace(-1.0, 1.0, ten_flow.shape[2], device=ten_flow.device).view(
            1, 1, ten_flow.shape[2], 1).expand(ten_flow.shape[0], -1, -1, ten_flow.shape[3])
        _grid_cache[key] = torch.cat([horizontal, vertical], 1)

    ten_flow = torch.cat([ten_flow[:, 0:1, :, :] / ((ten_input.shape[3] - 1.0) / 2.0),
                          ten_flow[:, 1:2, :, :] / ((ten_input.shape[2] - 1.0) / 2.0)], 1)

    grid = (_grid_cache[key] + ten_flow).permute(0, 2, 3, 1)
    return F.grid_sample(input=ten_input, grid=grid, mode='bilinear', padding_mode='border', align_corners=True)


class IFNet(nn.Module):
    """IFNet for Practical-RIFE v4.25/v4.26."""

    def __init__(self):
        super().__init__()
        # block0: img0(3) + img1(3) + f0(4) + f1(4) + timestep(1)
        # block1+: adds warped features(8), mask(1) and flow(4)
        self.block0 = IFBlock(3 + 3 + 4 + 4 + 1, c=192)
        self.block1 = IFBlock(3 + 3 + 4 + 4 + 4 + 4 + 1 + 1 + 4, c=128)
        self.block2 = IFBlock(3 + 3 + 4 + 4 + 4 + 4 + 1 + 1 + 4, c=96)
        self.block3 = IFBlock(3 + 3 + 4 + 4 + 4 + 4 + 1 + 1 + 4, c=64)
        self.encode = nn.Sequential(
            nn.Conv2d(3, 32, 3, 2, 1),
            nn.LeakyReLU(0.2, True),
            nn.Conv2d(32, 32, 3, 1, 1),
            nn.LeakyReLU(0.2, True),
            nn.Conv2d(32, 32, 3, 1, 1),
            nn.LeakyReLU(0.2, True),
            nn.ConvTranspose2d(32, 4, 4, 2, 1)
        )

    def forward(self, img0, img1, timestep, scale_list: Sequence[int] = (8, 4, 2, 1)):
        f0 = self.encode(img0[:, :3])
        f1 = self.encode(img1[:, :3])
        warped_img0 = img0
        warped_img1 = img1
        flow = None
        mask = None
        blocks = [self.block0, self.block1, self.block2, self.block3]
        for i, block in enumerate(blocks):
            if flow is None:
                flow, mask = block(
                    torch.cat((img0[:, :3], img1[:, :3], f0, f1, timestep), 1),
                    None, scale=scale_list[i])
            else:
                wf0 = warp(f0, flow[:, :2])
                wf1 = warp(f1, flow[:, 2:4])
                fd, m0 = block(
                    torch.cat((warped_img0[:, :3], warped_img1[:, :3], wf0, wf1, f0, f1, timestep, mask), 1),
                    flow, scale=scale_list[i])
                flow = flow + fd
                mask = mask + m0
            warped_img0 = warp(img0, flow[:, :2])
            warped_img1 = warp(img1, flow[:, 2:4])
        mask_final = torch.sigmoid(mask)
        return warped_img0 * mask_final + warped_img1 * (1 - mask_final)


def load_ifnet(model_path: Path, device: torch.device) -> IFNet:
    """
    Build IFNet and load a flownet.pkl state dict onto device.

    Raises:
        RuntimeError: If the file is missing weights the architecture needs
    """
    model = IFNet()
    state_dict = torch.load(model_path, map_location='cpu')
    if 'state_dict' in state_dict:
        state_dict = state_dict['state_dict']

    cleaned = {}
    for key, value in state_dict.items():
        if key.startswith('module.'):
            key = key[len('module.'):]
        if key.startswith('flownet.'):
            key = key[len('flownet.'):]
        cleaned[key] = value

    result = model.load_state_dict(cleaned, strict=False)
    if result.missing_keys:
        raise RuntimeError(
            f"{model_path.name} does not match the IFNet architecture: "
            f"{len(result.missing_keys)} missing keys (first: {result.missing_keys[0]})"
        )
    if result.unexpected_keys:
        logger.warning(f"Ignoring {len(result.unexpected_keys)} unexpected keys in {model_path.name}")
    model.to(device)
    model.eval()
    return model


def pad_to_multiple(tensor: torch.Tensor, multiple: int = 64) -> Tuple[torch.Tensor, Tuple[int, int]]:
    """Replicate-pad NCHW so H and W are multiples of `multiple`."""
    _, _, h, w = tensor.shape
    ph = ((h - 1) // multiple + 1) * multiple
    pw = ((w - 1) // multiple + 1) * multiple
    return F.pad(tensor, (0, pw - w, 0, ph - h), mode='replicate'), (h, w)
