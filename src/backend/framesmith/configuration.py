"""
Pipeline configuration values.

Everything a run needs to know is captured in one immutable PipelineConfiguration.
Changing any setting for a new look means building a new configuration (see
``with_overrides``) and starting a new run.

Backend preference is a tagged choice, ``Auto()`` or ``Pinned(kind)``: auto-selected
backends may fall back to a classical implementation, pinned ones may not.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, Generic, Optional, TypeVar, Union

from framesmith.constants import (
    CODEC_SETTINGS,
    CRF_BY_QUALITY,
    DEFAULT_FRAME_RATE,
    PRORES_QSCALE_BY_QUALITY,
)
from framesmith.services.assembly_errors import InvalidConfigurationError


class VideoCodec(str, Enum):
    """Supported output codecs."""
    H264 = "h264"
    HEVC = "hevc"
    PRORES_422 = "prores422"
    PRORES_4444 = "prores4444"

    @property
    def is_prores(self) -> bool:
        return self in (VideoCodec.PRORES_422, VideoCodec.PRORES_4444)


class VideoQuality(str, Enum):
    """Encoding quality presets."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    MAXIMUM = "maximum"


class PassMode(str, Enum):
    """Interpolation pass mode. MULTI only matters for factors above 2."""
    SINGLE = "single"
    MULTI = "multi"


class SubmissionMode(str, Enum):
    """
    Hint given to stateful backends on every call.

    RANDOM: first call of a run; the backend must not rely on any earlier call.
    SEQUENTIAL: the previous call in this session succeeded and state may be reused.
    """
    RANDOM = "random"
    SEQUENTIAL = "sequential"


class UpscaleBackendKind(str, Enum):
    """Super resolution backends, in auto-selection priority order."""
    REALESRGAN_TEMPORAL = "realesrgan_temporal"
    REALESRGAN_COMPACT = "realesrgan_compact"
    LANCZOS = "lanczos"

    @property
    def accelerated(self) -> bool:
        return self != UpscaleBackendKind.LANCZOS


class InterpolationBackendKind(str, Enum):
    """Frame interpolation backends, in auto-selection priority order."""
    RIFE = "rife"
    BLEND = "blend"

    @property
    def accelerated(self) -> bool:
        return self != InterpolationBackendKind.BLEND


BackendKind = Union[UpscaleBackendKind, InterpolationBackendKind]

K = TypeVar("K", UpscaleBackendKind, InterpolationBackendKind)


@dataclass(frozen=True)
class Auto:
    """Let the stage pick the best available backend, falling back when needed."""

    @property
    def is_pinned(self) -> bool:
        return False


@dataclass(frozen=True)
class Pinned(Generic[K]):
    """Use exactly this backend; failures are surfaced, never degraded."""
    kind: K

    @property
    def is_pinned(self) -> bool:
        return True


BackendChoice = Union[Auto, Pinned]

AUTO = Auto()


def parse_backend_choice(value: Optional[str], kind_enum) -> BackendChoice:
    """Turn an API/CLI string ("auto", "lanczos", ...) into a BackendChoice."""
    if value is None or value == "auto":
        return AUTO
    try:
        return Pinned(kind_enum(value))
    except ValueError:
        raise InvalidConfigurationError(
            f"Unknown backend '{value}'. Options: auto, {', '.join(k.value for k in kind_enum)}",
            field="backend",
            value=value,
        )


def _check_factor(name: str, factor: int) -> None:
    if isinstance(factor, bool) or not isinstance(factor, int) or factor < 1:
        raise InvalidConfigurationError(f"{name} factor must be a positive integer, got {factor}", field=name, value=factor)


@dataclass(frozen=True)
class UpscaleRequest:
    """Super resolution settings. A factor of 1 is the same as no request."""
    factor: int = 2
    backend: BackendChoice = AUTO

    def __post_init__(self):
        _check_factor("upscale", self.factor)

    @property
    def is_active(self) -> bool:
        return self.factor >= 2


@dataclass(frozen=True)
class InterpolationRequest:
    """Frame interpolation settings. A factor of 1 is the same as no request."""
    factor: int = 2
    backend: BackendChoice = AUTO
    pass_mode: PassMode = PassMode.SINGLE

    def __post_init__(self):
        _check_factor("interpolation", self.factor)

    @property
    def is_active(self) -> bool:
        return self.factor >= 2


@dataclass(frozen=True)
class PipelineConfiguration:
    """
    Immutable description of one assembly run.

    Args:
        output_path: Destination video file (QuickTime container)
        source_frame_rate: Cadence the frames were captured/generated at
        target_frame_rate: Output cadence once interpolation has been applied
        codec: Output codec
        quality: Encoding quality preset
        overwrite_existing: Replace an existing file at output_path (checked before any work)
        upscale: Optional super resolution request
        interpolation: Optional frame interpolation request
    """
    output_path: Path
    source_frame_rate: int = DEFAULT_FRAME_RATE
    target_frame_rate: int = DEFAULT_FRAME_RATE
    codec: VideoCodec = VideoCodec.H264
    quality: VideoQuality = VideoQuality.HIGH
    overwrite_existing: bool = True
    upscale: Optional[UpscaleRequest] = None
    interpolation: Optional[InterpolationRequest] = None

    def __post_init__(self):
        object.__setattr__(self, "output_path", Path(self.output_path))
        for name in ("source_frame_rate", "target_frame_rate"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidConfigurationError(f"{name} must be a positive integer, got {value}", field=name, value=value)

    @property
    def upscale_active(self) -> bool:
        return self.upscale is not None and self.upscale.is_active

    @property
    def interpolation_active(self) -> bool:
        return self.interpolation is not None and self.interpolation.is_active

    def with_overrides(self, **changes: Any) -> "PipelineConfiguration":
        """Return a copy with some fields replaced (the reprocess workflow)."""
        return replace(self, **changes)


def effective_frame_rate(configuration: PipelineConfiguration, interpolation_applied: bool) -> int:
    """
    Frame rate the encoder must use.

    With interpolation the frame count already reflects the target cadence, so the
    target rate is used. Without it the source rate is kept; using the target rate
    there would shrink or stretch playback relative to the original capture.
    """
    if interpolation_applied:
        return configuration.target_frame_rate
    return configuration.source_frame_rate


def frame_duration(frame_rate: int) -> Fraction:
    """Exact presentation duration of one frame in seconds."""
    return Fraction(1, frame_rate)


def presentation_timestamp(frame_index: int, frame_rate: int) -> Fraction:
    """Exact presentation timestamp of a frame in seconds."""
    return frame_index * frame_duration(frame_rate)


def clip_duration(frame_count: int, frame_rate: int) -> Fraction:
    return Fraction(frame_count, frame_rate)


def encoder_arguments(codec: VideoCodec, quality: VideoQuality) -> Dict[str, Any]:
    """
    ffmpeg output keyword arguments for a codec/quality pair.

    Returns:
        Dict suitable for ``ffmpeg.output(..., **kwargs)``
    """
    codec = VideoCodec(codec)
    quality = VideoQuality(quality)
    args: Dict[str, Any] = dict(CODEC_SETTINGS[codec.value])
    if codec.is_prores:
        args["qscale:v"] = PRORES_QSCALE_BY_QUALITY[quality.value]
    else:
        args["crf"] = CRF_BY_QUALITY[codec.value][quality.value]
    return args


# =============================================================================
# Process settings
# =============================================================================

def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Process-wide settings read from the environment."""
    weights_dir: Path = field(default_factory=lambda: Path(os.getenv("FRAMESMITH_WEIGHTS_DIR", "weights")))
    ffmpeg_binary: str = field(default_factory=lambda: os.getenv("FRAMESMITH_FFMPEG", "ffmpeg"))
    force_headless: bool = field(default_factory=lambda: _env_flag("FRAMESMITH_FORCE_HEADLESS"))
    device: Optional[str] = field(default_factory=lambda: os.getenv("FRAMESMITH_DEVICE") or None)
    env: str = field(default_factory=lambda: os.getenv("ENV", "development"))

    @property
    def is_dev(self) -> bool:
        return self.env == "development"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the settings singleton"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
