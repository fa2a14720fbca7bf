"""
Super Resolution Backends

Polymorphic upscaling backends behind one interface:
- RealESRGANTemporalBackend: RealESRGAN_x4plus (RRDBNet) plus temporal stabilization
  that reuses the previous output wherever the source did not change
- RealESRGANCompactBackend: realesr-general-x4v3 (SRVGGNetCompact), low latency, stateless
- LanczosBackend: OpenCV Lanczos4 resampling, always available

Architecture:
- BaseUpscaleBackend: setup() / process() / teardown() lifecycle driven by a BackendSession
- UpscaleParameters: one request (source frame, factor, submission mode, temporal state)
- create_upscale_backend(): factory keyed by UpscaleBackendKind

Every backend returns exactly (width * factor, height * factor).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from framesmith.configuration import SubmissionMode, UpscaleBackendKind, get_settings
from framesmith.constants import TEMPORAL_BLEND_STRENGTH, TEMPORAL_CHANGE_THRESHOLD
from framesmith.ai_upscaler.model_manager import ModelManager, get_model_manager
from framesmith.ai_upscaler.utils import (
    ensure_size,
    resize_lanczos,
    scaled_size,
    select_device,
    setup_torchvision_compatibility,
)
from framesmith.services.assembly_errors import ModelDownloadRequiredError

logger = logging.getLogger(__name__)


@dataclass
class UpscaleParameters:
    """
    One upscale request.

    previous_source / previous_output are None for the first frame of a run and are
    ignored by stateless backends.
    """
    source: np.ndarray
    factor: int
    mode: SubmissionMode = SubmissionMode.SEQUENTIAL
    previous_source: Optional[np.ndarray] = None
    previous_output: Optional[np.ndarray] = None


class BaseUpscaleBackend(ABC):
    """Abstract base class for super resolution backends"""

    kind: UpscaleBackendKind

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def accelerated(self) -> bool:
        return self.kind.accelerated

    def setup(self, width: int, height: int, factor: int, **kwargs) -> None:
        """Prepare for frames of width x height at factor. Default: nothing to do."""

    @abstractmethod
    def process(self, params: UpscaleParameters) -> np.ndarray:
        """
        Upscale one frame.

        Args:
            params: Source frame, factor, submission mode and temporal state

        Returns:
            BGR uint8 frame of exactly (width * factor, height * factor)
        """

    def teardown(self) -> None:
        """Release model/device resources. Default: nothing to release."""


class LanczosBackend(BaseUpscaleBackend):
    """Classical resampling. Stateless; ignores temporal state."""

    kind = UpscaleBackendKind.LANCZOS

    def process(self, params: UpscaleParameters) -> np.ndarray:
        height, width = params.source.shape[:2]
        return resize_lanczos(params.source, scaled_size(width, height, params.factor))


class RealESRGANBackend(BaseUpscaleBackend):
    """Shared Real-ESRGAN plumbing; subclasses pick the network."""

    native_scale = 4
    tile_size = 0

    def __init__(self, model_manager: Optional[ModelManager] = None, device: Optional[str] = None):
        self.model_manager = model_manager or get_model_manager()
        self.device_name = device or get_settings().device
        self.upsampler = None
        self.device = None

    @abstractmethod
    def _build_network(self):
        """Return the torch module matching the weight file."""

    def setup(self, width: int, height: int, factor: int, **kwargs) -> None:
        """Load weights onto the accelerator. Never downloads."""
        status = self.model_manager.status(self.kind)
        if not status.is_ready:
            raise ModelDownloadRequiredError(self.name, status.state.value, status.progress)

        setup_torchvision_compatibility()
        from realesrgan import RealESRGANer

        self.device = select_device(self.device_name)
        model_path = self.model_manager.artifact_path(self.kind)
        logger.info(f"Initializing {self.name} on {self.device} for {width}x{height} x{factor}")

        self.upsampler = RealESRGANer(
            scale=self.native_scale,
            model_path=str(model_path),
            dni_weight=None,
            model=self._build_network(),
            tile=self.tile_size,
            tile_pad=10 if self.tile_size > 0 else 0,
            pre_pad=0,
            half=self.device.type == 'cuda',
            device=self.device,
        )
        logger.info(f"✓ {self.name} loaded successfully!")

    def _enhance(self, params: UpscaleParameters) -> np.ndarray:
        if self.upsampler is None:
            raise RuntimeError("Model not initialized. Call setup() first.")
        height, width = params.source.shape[:2]
        output, _ = self.upsampler.enhance(params.source, outscale=params.factor)
        return ensure_size(output, scaled_size(width, height, params.factor))

    def process(self, params: UpscaleParameters) -> np.ndarray:
        return self._enhance(params)

    def teardown(self) -> None:
        self.upsampler = None
        if self.device is not None and self.device.type == 'cuda':
            import torch
            torch.cuda.empty_cache()
        self.device = None


class RealESRGANCompactBackend(RealESRGANBackend):
    """realesr-general-x4v3: small VGG-style network, one frame at a time."""

    kind = UpscaleBackendKind.REALESRGAN_COMPACT

    def _build_network(self):
        from realesrgan.archs.srvgg_arch import SRVGGNetCompact
        return SRVGGNetCompact(num_in_ch=3, num_out_ch=3, num_feat=64, num_conv=32, upscale=4, act_type='prelu')


class RealESRGANTemporalBackend(RealESRGANBackend):
    """
    RealESRGAN_x4plus with temporal stabilization.

    In SEQUENTIAL mode, pixels whose source barely changed since the previous frame
    are pulled toward the previous output, which suppresses GAN texture flicker on
    static regions. RANDOM mode upscales the frame on its own.
    """

    kind = UpscaleBackendKind.REALESRGAN_TEMPORAL

    def _build_network(self):
        from basicsr.archs.rrdbnet_arch import RRDBNet
        return RRDBNet(num_in_ch=3, num_out_ch=3, num_feat=64, num_block=23, num_grow_ch=32, scale=4)

    def process(self, params: UpscaleParameters) -> np.ndarray:
        output = self._enhance(params)

        if params.mode == SubmissionMode.RANDOM:
            return output

        if params.previous_source is None or params.previous_output is None:
            return output
        if params.previous_source.shape != params.source.shape or params.previous_output.shape != output.shape:
            # Geometry changed mid-run; nothing to stabilize against
            return output

        return stabilize(params.source, params.previous_source, output, params.previous_output)


def stabilize(
    source: np.ndarray,
    previous_source: np.ndarray,
    output: np.ndarray,
    previous_output: np.ndarray,
    threshold: int = TEMPORAL_CHANGE_THRESHOLD,
    strength: float = TEMPORAL_BLEND_STRENGTH,
) -> np.ndarray:
    """Blend output toward previous_output where the low-res source is static."""
    delta = cv2.absdiff(source, previous_source).max(axis=2)
    static = (delta < threshold).astype(np.float32)
    out_height, out_width = output.shape[:2]
    static = cv2.resize(static, (out_width, out_height), interpolation=cv2.INTER_LINEAR)
    static = cv2.GaussianBlur(static, (5, 5), 0)
    alpha = (strength * static)[..., None]
    blended = output.astype(np.float32) * (1.0 - alpha) + previous_output.astype(np.float32) * alpha
    return np.clip(blended + 0.5, 0, 255).astype(np.uint8)


_BACKENDS = {
    UpscaleBackendKind.REALESRGAN_TEMPORAL: RealESRGANTemporalBackend,
    UpscaleBackendKind.REALESRGAN_COMPACT: RealESRGANCompactBackend,
}


def create_upscale_backend(
    kind: UpscaleBackendKind,
    model_manager: Optional[ModelManager] = None,
    device: Optional[str] = None,
) -> BaseUpscaleBackend:
    """Instantiate the backend for kind."""
    if kind == UpscaleBackendKind.LANCZOS:
        return LanczosBackend()
    return _BACKENDS[kind](model_manager=model_manager, device=device)
