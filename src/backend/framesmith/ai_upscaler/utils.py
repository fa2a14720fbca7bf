"""
Utility functions for the AI backends

This module contains:
- Torchvision compatibility shim needed before importing Real-ESRGAN/BasicSR
- Torch device selection
- numpy <-> torch image conversion
- Exact-size Lanczos resampling and cross-dissolve helpers used by the classical backends
"""

import cv2
import numpy as np
import logging
import sys
import types
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


# ============================================================================
# COMPATIBILITY SHIM: torchvision.transforms.functional_tensor was merged into
# torchvision.transforms.functional in torchvision >= 0.16. BasicSR still
# imports the old location, so alias it before realesrgan is imported.
# ============================================================================

def setup_torchvision_compatibility():
    """Alias torchvision.transforms.functional_tensor to its new home if it is gone."""
    if 'torchvision.transforms.functional_tensor' in sys.modules:
        return
    try:
        import torchvision.transforms.functional_tensor  # noqa: F401
        return
    except (ImportError, AttributeError, RuntimeError) as e:
        logger.debug(f"torchvision import compatibility issue: {e}")

    import torchvision.transforms
    import torchvision.transforms.functional as F

    functional_tensor = types.ModuleType('torchvision.transforms.functional_tensor')
    functional_tensor.__file__ = F.__file__
    functional_tensor.__package__ = 'torchvision.transforms'
    for attr in dir(F):
        if not attr.startswith('_'):
            setattr(functional_tensor, attr, getattr(F, attr))

    sys.modules['torchvision.transforms.functional_tensor'] = functional_tensor
    torchvision.transforms.functional_tensor = functional_tensor
    logger.info("Applied torchvision.transforms.functional_tensor compatibility shim for Real-ESRGAN")


def select_device(preferred: Optional[str] = None):
    """
    Pick the torch device for accelerated backends.

    Args:
        preferred: 'cuda', 'mps' or 'cpu' to force a device, None for auto

    Returns:
        torch.device
    """
    import torch

    if preferred:
        return torch.device(preferred)
    if torch.cuda.is_available():
        return torch.device('cuda')
    mps = getattr(torch.backends, 'mps', None)
    if mps is not None and mps.is_available():
        return torch.device('mps')
    return torch.device('cpu')


def image_to_tensor(image: np.ndarray, device):
    """BGR uint8 HxWx3 -> float tensor 1x3xHxW in [0, 1] on device."""
    import torch

    tensor = torch.from_numpy(np.ascontiguousarray(image.transpose(2, 0, 1)))
    return tensor.unsqueeze(0).to(device).float() / 255.0


def tensor_to_image(tensor) -> np.ndarray:
    """Float tensor 3xHxW (or 1x3xHxW) in [0, 1] -> BGR uint8 HxWx3."""
    if tensor.dim() == 4:
        tensor = tensor[0]
    array = tensor.detach().clamp(0, 1).mul(255.0).round().byte().cpu().numpy()
    return array.transpose(1, 2, 0)


def scaled_size(width: int, height: int, factor: int) -> Tuple[int, int]:
    return width * factor, height * factor


def resize_lanczos(frame: np.ndarray, target_size: Tuple[int, int]) -> np.ndarray:
    """
    Resample to exactly target_size with Lanczos4 (highest quality OpenCV filter).

    Args:
        frame: Input frame
        target_size: Target (width, height)
    """
    return cv2.resize(frame, target_size, interpolation=cv2.INTER_LANCZOS4)


def ensure_size(frame: np.ndarray, target_size: Tuple[int, int]) -> np.ndarray:
    """Resample only if a model returned a frame off by rounding."""
    height, width = frame.shape[:2]
    if (width, height) == tuple(target_size):
        return frame
    logger.debug(f"Correcting output size {width}x{height} -> {target_size[0]}x{target_size[1]}")
    return resize_lanczos(frame, target_size)


def cross_dissolve(first: np.ndarray, second: np.ndarray, phase: float, dst: Optional[np.ndarray] = None) -> np.ndarray:
    """Weighted blend (1 - phase) * first + phase * second, written into dst when given."""
    return cv2.addWeighted(first, 1.0 - phase, second, phase, 0.0, dst=dst)
