"""
Assembly Errors - One error taxonomy for every pipeline stage.

This module provides:
- AssemblyErrorType: Categorized error kinds for programmatic handling
- AssemblyError: Base exception carrying the kind, the failing stage and structured detail
- One subclass per concrete failure, each exposing its fields as attributes

Nothing here produces user-facing text beyond a short diagnostic message; callers
build their own messages from ``to_dict()``.

USAGE:
    from framesmith.services.assembly_errors import AssemblyError, AssemblyErrorType

    try:
        pipeline.run(frames, configuration)
    except AssemblyError as e:
        if e.error_type == AssemblyErrorType.ALREADY_EXISTS:
            # Ask before overwriting
        elif e.error_type == AssemblyErrorType.MODEL_NOT_READY:
            # Offer a model download
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from framesmith.services.ffmpeg_errors import FFmpegError


class AssemblyErrorType(Enum):
    """Categorized assembly error kinds."""

    # Caller supplied something unusable; never retried
    INVALID_INPUT = "invalid_input"

    # Backend selection
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    MODEL_NOT_READY = "model_not_ready"

    # Backend failed at runtime after passing capability checks
    TRANSIENT_PROCESSING_FAILURE = "transient_processing_failure"

    # Writer / filesystem / network
    IO_FAILURE = "io_failure"
    ALREADY_EXISTS = "already_exists"

    CANCELLED = "cancelled"


class AssemblyError(Exception):
    """
    Base exception for all pipeline failures.

    Provides structured error information including:
    - error_type: Categorized error kind
    - stage: Pipeline stage that failed ("upscaling", "interpolation", "encoding"),
      filled in by the orchestrator when the stage is known
    - detail: Dict of structured fields (frame index, geometry, factor, ...)
    """

    error_type = AssemblyErrorType.INVALID_INPUT

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_type: Optional[AssemblyErrorType] = None,
    ):
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type
        self.stage = stage
        self.detail: Dict[str, Any] = dict(detail or {})

    def __str__(self) -> str:
        where = f", stage={self.stage}" if self.stage else ""
        return f"{self.args[0]} (type={self.error_type.value}{where})"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses and progress messages."""
        return {
            "error": type(self).__name__,
            "error_type": self.error_type.value,
            "message": self.args[0],
            "stage": self.stage,
            "detail": _jsonable(self.detail),
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseException):
        return str(value)
    return value


# =============================================================================
# INVALID_INPUT
# =============================================================================

class InvalidConfigurationError(AssemblyError):
    """A configuration value is outside its valid range."""

    def __init__(self, message: str, field: str, value: Any):
        super().__init__(message, detail={"field": field, "value": value})
        self.field = field
        self.value = value


class InvalidFactorError(AssemblyError):
    """Scale or interpolation factor not usable for the requested operation."""

    def __init__(self, factor: int, supported: Optional[Sequence[int]] = None, backend: Optional[str] = None):
        if supported:
            message = f"Factor {factor} not supported. Supported factors: {list(supported)}"
        else:
            message = f"Factor must be at least 2, got {factor}"
        super().__init__(message, detail={"factor": factor, "supported": list(supported or []), "backend": backend})
        self.factor = factor
        self.supported = list(supported or [])
        self.backend = backend


class InsufficientFramesError(AssemblyError):
    """Fewer frames than the operation needs."""

    def __init__(self, count: int, required: int):
        super().__init__(
            f"At least {required} frame(s) required, got {count}",
            detail={"count": count, "required": required},
        )
        self.count = count
        self.required = required


class InconsistentFrameSizesError(AssemblyError):
    """A frame's geometry differs from the first frame's."""

    def __init__(self, frame_index: int, expected: Tuple[int, int], actual: Tuple[int, int]):
        super().__init__(
            f"Frame {frame_index} is {actual[0]}x{actual[1]}, expected {expected[0]}x{expected[1]}",
            detail={"frame_index": frame_index, "expected": list(expected), "actual": list(actual)},
        )
        self.frame_index = frame_index
        self.expected = expected
        self.actual = actual


# =============================================================================
# CAPABILITY_UNAVAILABLE / MODEL_NOT_READY
# =============================================================================

class CapabilityUnavailableError(AssemblyError):
    """A pinned backend cannot run here."""

    error_type = AssemblyErrorType.CAPABILITY_UNAVAILABLE

    def __init__(self, backend: str, reason: str, code: Optional[str] = None):
        super().__init__(
            f"Backend {backend} unavailable: {reason}",
            detail={"backend": backend, "reason": reason, "code": code},
        )
        self.backend = backend
        self.reason = reason
        self.code = code


class FrameTooLargeError(AssemblyError):
    """Input geometry exceeds an accelerated backend's limit."""

    error_type = AssemblyErrorType.CAPABILITY_UNAVAILABLE

    def __init__(self, backend: str, width: int, height: int, max_width: int, max_height: int):
        super().__init__(
            f"Frame size {width}x{height} exceeds maximum {max_width}x{max_height} for {backend}",
            detail={
                "backend": backend,
                "requested": [width, height],
                "maximum": [max_width, max_height],
            },
        )
        self.backend = backend
        self.width = width
        self.height = height
        self.max_width = max_width
        self.max_height = max_height


class ModelDownloadRequiredError(AssemblyError):
    """A pinned ML backend has no model weights on disk."""

    error_type = AssemblyErrorType.MODEL_NOT_READY

    def __init__(self, backend: str, status: str = "download_required", progress: Optional[float] = None):
        super().__init__(
            f"Model for {backend} is not ready ({status})",
            detail={"backend": backend, "status": status, "progress": progress},
        )
        self.backend = backend
        self.status = status
        self.progress = progress


# =============================================================================
# TRANSIENT_PROCESSING_FAILURE
# =============================================================================

class ProcessingFailureError(AssemblyError):
    """An accelerated backend call failed at runtime."""

    error_type = AssemblyErrorType.TRANSIENT_PROCESSING_FAILURE

    def __init__(self, backend: str, frame_index: Optional[int] = None, cause: Optional[BaseException] = None):
        where = f" at frame {frame_index}" if frame_index is not None else ""
        super().__init__(
            f"Backend {backend} failed{where}: {cause}",
            detail={"backend": backend, "frame_index": frame_index, "cause": cause},
        )
        self.backend = backend
        self.frame_index = frame_index
        self.cause = cause


# =============================================================================
# IO_FAILURE
# =============================================================================

class WriterStage(Enum):
    """Writer lifecycle step that failed."""
    CONSTRUCTION = "construction"
    INPUT_NEGOTIATION = "input_negotiation"
    SESSION_START = "session_start"
    APPEND = "append"
    FINALIZE = "finalize"


class WriterError(AssemblyError):
    """
    Video writer failure.

    Construction and input negotiation failures are configuration problems the
    caller can fix (missing ffmpeg, bad directory, unsupported encoder, odd
    dimensions). Session start, append and finalize failures are I/O problems
    where retrying the whole run may succeed.
    """

    error_type = AssemblyErrorType.IO_FAILURE

    def __init__(
        self,
        writer_stage: WriterStage,
        message: str,
        frame_index: Optional[int] = None,
        ffmpeg_error: Optional[FFmpegError] = None,
    ):
        detail: Dict[str, Any] = {"writer_stage": writer_stage, "frame_index": frame_index}
        if ffmpeg_error is not None:
            detail["ffmpeg_error_type"] = ffmpeg_error.error_type
            detail["ffmpeg_message"] = ffmpeg_error.args[0]
        super().__init__(message, detail=detail)
        self.writer_stage = writer_stage
        self.frame_index = frame_index
        self.ffmpeg_error = ffmpeg_error

    @property
    def is_configuration_error(self) -> bool:
        return self.writer_stage in (WriterStage.CONSTRUCTION, WriterStage.INPUT_NEGOTIATION)


class FrameLoadError(AssemblyError):
    """A path-backed frame could not be decoded."""

    error_type = AssemblyErrorType.IO_FAILURE

    def __init__(self, path: Path, frame_index: Optional[int] = None):
        super().__init__(
            f"Could not read frame image {path}",
            detail={"path": path, "frame_index": frame_index},
        )
        self.path = path
        self.frame_index = frame_index


class ModelDownloadFailedError(AssemblyError):
    """Fetching model weights failed."""

    error_type = AssemblyErrorType.IO_FAILURE

    def __init__(self, backend: str, cause: Optional[BaseException] = None):
        super().__init__(
            f"Model download for {backend} failed: {cause}",
            detail={"backend": backend, "cause": cause},
        )
        self.backend = backend
        self.cause = cause


class FrameArchiveError(AssemblyError):
    """Saving or loading a frame archive failed."""

    error_type = AssemblyErrorType.IO_FAILURE

    def __init__(self, message: str, directory: Path):
        super().__init__(message, detail={"directory": directory})
        self.directory = directory


# =============================================================================
# ALREADY_EXISTS / CANCELLED
# =============================================================================

class OutputExistsError(AssemblyError):
    """Destination exists and overwriting is disabled."""

    error_type = AssemblyErrorType.ALREADY_EXISTS

    def __init__(self, path: Path):
        super().__init__(f"Output file already exists: {path}", detail={"path": path})
        self.path = path


class AssemblyCancelledError(AssemblyError):
    """Run was cancelled between frames."""

    error_type = AssemblyErrorType.CANCELLED

    def __init__(self, context: str = ""):
        message = "Assembly was cancelled"
        if context:
            message = f"{message} during {context}"
        super().__init__(message, detail={"context": context})
        self.context = context
