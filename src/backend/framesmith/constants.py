"""
Shared constants for the framesmith backend.

This module is the single source of truth for encoder tables, backend limits,
model artifact locations and progress weighting coefficients. Nothing here
depends on torch or ffmpeg being installed.
"""

from enum import Enum
from typing import Dict, Optional, Tuple


# =============================================================================
# Assembly Status Constants
# =============================================================================

class AssemblyStatus(str, Enum):
    """Assembly job status values for WebSocket messages and progress snapshots."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


# Defaults carried over from the generation side, which renders at 16 fps
DEFAULT_FRAME_RATE = 16

# Output container is fixed; every codec below has a valid QuickTime mapping
CONTAINER_FORMAT = "mov"
OUTPUT_SUFFIX = ".mov"
PARTIAL_SUFFIX = ".partial"

# Raw frames are piped to ffmpeg in OpenCV's native channel order
PIPE_PIXEL_FORMAT = "bgr24"


# =============================================================================
# Encoder tables
# =============================================================================

# codec id -> ffmpeg encoder settings (quality handled separately)
CODEC_SETTINGS: Dict[str, Dict[str, str]] = {
    "h264": {"vcodec": "libx264", "pix_fmt": "yuv420p", "preset": "medium"},
    "hevc": {"vcodec": "libx265", "pix_fmt": "yuv420p", "preset": "medium", "tag:v": "hvc1"},
    "prores422": {"vcodec": "prores_ks", "pix_fmt": "yuv422p10le", "profile:v": "2"},
    "prores4444": {"vcodec": "prores_ks", "pix_fmt": "yuva444p10le", "profile:v": "4"},
}

# Codecs whose pixel format subsamples chroma 2x2 need even dimensions
CHROMA_SUBSAMPLED_CODECS = ("h264", "hevc")

# quality id -> CRF for x264/x265 (lower = better)
CRF_BY_QUALITY: Dict[str, Dict[str, int]] = {
    "h264": {"low": 28, "medium": 23, "high": 18, "maximum": 12},
    "hevc": {"low": 32, "medium": 28, "high": 22, "maximum": 16},
}

# quality id -> qscale for prores_ks (lower = better)
PRORES_QSCALE_BY_QUALITY: Dict[str, int] = {
    "low": 13,
    "medium": 9,
    "high": 5,
    "maximum": 2,
}


# =============================================================================
# Backend limits
# =============================================================================

# Minimum torch release for accelerated backends
MIN_TORCH_VERSION: Tuple[int, int] = (2, 0)

# Maximum input geometry per accelerated backend (width, height)
MAX_INPUT_GEOMETRY: Dict[str, Tuple[int, int]] = {
    "realesrgan_temporal": (1920, 1080),
    "realesrgan_compact": (1920, 1080),
    "rife": (3840, 2160),
}

# Supported integer scale factors; None means any factor >= 2
SUPPORTED_SCALE_FACTORS: Dict[str, Optional[Tuple[int, ...]]] = {
    "realesrgan_temporal": (2, 3, 4),
    "realesrgan_compact": (2, 4),
    "lanczos": None,
}

# Reported when a caller asks a classical backend for its factor list
CLASSICAL_SCALE_FACTORS: Tuple[int, ...] = (2, 3, 4)

# Temporal stabilization for the Real-ESRGAN temporal backend
TEMPORAL_CHANGE_THRESHOLD = 12      # per-pixel source delta (0-255) treated as static
TEMPORAL_BLEND_STRENGTH = 0.35      # share of previous output kept in static regions


# =============================================================================
# Model artifacts
# =============================================================================

MODEL_ARTIFACTS: Dict[str, Dict[str, str]] = {
    "realesrgan_temporal": {
        "filename": "RealESRGAN_x4plus.pth",
        "url": "https://github.com/xinntao/Real-ESRGAN/releases/download/v0.1.0/RealESRGAN_x4plus.pth",
        "source": "http",
    },
    "realesrgan_compact": {
        "filename": "realesr-general-x4v3.pth",
        "url": "https://github.com/xinntao/Real-ESRGAN/releases/download/v0.2.5.0/realesr-general-x4v3.pth",
        "source": "http",
    },
    "rife": {
        # Practical-RIFE v4.25, distributed as a zip holding flownet.pkl
        "filename": "flownet_v4.25.pkl",
        "url": "https://drive.google.com/uc?id=1ZKjcbmt1hypiFprJPIKW0Tt0lr_2i7bg",
        "source": "gdrive",
    },
}

ZIP_MAGIC = b"PK\x03\x04"


# =============================================================================
# Progress weighting
# =============================================================================

# Relative cost per output megapixel of each stage. Weights are derived from
# these and the actual frame counts/geometry, over the active stages only.
STAGE_COST_COEFFICIENTS: Dict[str, float] = {
    "upscaling": 4.0,
    "interpolation": 2.0,
    "encoding": 1.0,
}


# =============================================================================
# Writer tuning
# =============================================================================

WRITER_QUEUE_DEPTH = 8
WRITER_POLL_INTERVAL_S = 0.005
WRITER_START_GRACE_S = 0.2
