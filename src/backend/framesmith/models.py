"""
Pydantic models for the framesmith API.

This module contains the request/response models and their conversion into the
immutable PipelineConfiguration used by the pipeline.
"""

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from framesmith.configuration import (
    InterpolationBackendKind,
    InterpolationRequest,
    PassMode,
    PipelineConfiguration,
    UpscaleBackendKind,
    UpscaleRequest,
    VideoCodec,
    VideoQuality,
    parse_backend_choice,
)
from framesmith.constants import DEFAULT_FRAME_RATE


class UpscaleOptions(BaseModel):
    """Super resolution settings; factor 1 disables the stage"""
    factor: int = 2
    backend: str = "auto"  # auto | realesrgan_temporal | realesrgan_compact | lanczos


class InterpolationOptions(BaseModel):
    """Frame interpolation settings; factor 1 disables the stage"""
    factor: int = 2
    backend: str = "auto"  # auto | rife | blend
    pass_mode: PassMode = PassMode.SINGLE


class AssemblyRequest(BaseModel):
    """Request model for POST /api/assemble"""
    frame_paths: List[str] = Field(default_factory=list)
    archive_dir: Optional[str] = None  # load frames from a frame archive instead
    output_path: str
    source_frame_rate: int = DEFAULT_FRAME_RATE
    target_frame_rate: int = DEFAULT_FRAME_RATE
    codec: VideoCodec = VideoCodec.H264
    quality: VideoQuality = VideoQuality.HIGH
    overwrite_existing: bool = True
    upscale: Optional[UpscaleOptions] = None
    interpolation: Optional[InterpolationOptions] = None
    assembly_id: Optional[str] = None  # client-chosen id for the progress WebSocket

    def to_configuration(self) -> PipelineConfiguration:
        """Build the pipeline configuration. Raises InvalidConfigurationError on bad values."""
        upscale = None
        if self.upscale is not None:
            upscale = UpscaleRequest(
                factor=self.upscale.factor,
                backend=parse_backend_choice(self.upscale.backend, UpscaleBackendKind),
            )
        interpolation = None
        if self.interpolation is not None:
            interpolation = InterpolationRequest(
                factor=self.interpolation.factor,
                backend=parse_backend_choice(self.interpolation.backend, InterpolationBackendKind),
                pass_mode=self.interpolation.pass_mode,
            )
        return PipelineConfiguration(
            output_path=Path(self.output_path),
            source_frame_rate=self.source_frame_rate,
            target_frame_rate=self.target_frame_rate,
            codec=self.codec,
            quality=self.quality,
            overwrite_existing=self.overwrite_existing,
            upscale=upscale,
            interpolation=interpolation,
        )


class AssemblyResponse(BaseModel):
    """Response model for a completed assembly"""
    assembly_id: str
    output_path: str
    frame_count: int
    frame_rate: int
    duration: float
    backends: Dict[str, str]
    fell_back: bool


class ModelStatusResponse(BaseModel):
    backend: str
    state: str
    progress: Optional[float] = None


class ModelDownloadRequest(BaseModel):
    """Geometry and factor the model will be used for (validated against the backend)"""
    width: int = 1280
    height: int = 720
    factor: int = 2
