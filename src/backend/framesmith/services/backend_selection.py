"""
Backend selection shared by the upscale and interpolation stages.

Backends are resolved once, at stage start, through the capability probe:
- Pinned(kind): probed; if unavailable the probe's reason is raised as a typed error
- Auto: the stage's priority list is walked and the first Available backend wins;
  the last entry is always a classical backend that every gate passes

Auto-selected backends that fail at runtime fall back to the classical backend (the
upscale stage also degrades pinned backends on processing failures);
``should_fall_back`` decides which errors qualify.
"""

import logging
from typing import Optional, Sequence

from framesmith.configuration import BackendChoice, BackendKind
from framesmith.ai_upscaler.capabilities import CapabilityProbe, ReasonCode, Unavailable
from framesmith.services.assembly_errors import (
    AssemblyError,
    AssemblyErrorType,
    CapabilityUnavailableError,
    FrameTooLargeError,
    InvalidFactorError,
    ModelDownloadRequiredError,
)

logger = logging.getLogger(__name__)

# Error kinds an auto-selected backend may recover from by degrading
FALLBACK_ERROR_TYPES = (
    AssemblyErrorType.CAPABILITY_UNAVAILABLE,
    AssemblyErrorType.MODEL_NOT_READY,
    AssemblyErrorType.TRANSIENT_PROCESSING_FAILURE,
)


def capability_error(capability: Unavailable, width: int, height: int, factor: Optional[int] = None) -> AssemblyError:
    """Translate an Unavailable probe result into the matching typed error."""
    kind = capability.kind.value
    if capability.code == ReasonCode.GEOMETRY:
        max_width, max_height = capability.detail.get("maximum", (0, 0))
        return FrameTooLargeError(kind, width, height, max_width, max_height)
    if capability.code == ReasonCode.FACTOR:
        return InvalidFactorError(factor, capability.detail.get("supported"), backend=kind)
    if capability.code == ReasonCode.MODEL_DOWNLOAD_REQUIRED:
        return ModelDownloadRequiredError(kind)
    if capability.code == ReasonCode.MODEL_DOWNLOADING:
        return ModelDownloadRequiredError(kind, "downloading", capability.detail.get("progress"))
    return CapabilityUnavailableError(kind, capability.reason, capability.code.value)


def select_backend(
    probe: CapabilityProbe,
    choice: BackendChoice,
    priority: Sequence[BackendKind],
    width: int,
    height: int,
    factor: Optional[int] = None,
    stage: str = "",
) -> BackendKind:
    """
    Resolve a BackendChoice to a concrete backend kind.

    Raises:
        AssemblyError: The mapped reason when a pinned backend is unavailable
    """
    if choice.is_pinned:
        capability = probe.probe(choice.kind, width, height, factor)
        if isinstance(capability, Unavailable):
            logger.error(f"[{stage}] Pinned backend {choice.kind.value} unavailable: {capability.reason}")
            raise capability_error(capability, width, height, factor)
        logger.info(f"[{stage}] Using pinned backend: {choice.kind.value}")
        return choice.kind

    skipped = []
    for kind in priority:
        capability = probe.probe(kind, width, height, factor)
        if capability.is_available:
            if skipped:
                logger.info(f"[{stage}] Auto-selected {kind.value} (skipped: {'; '.join(skipped)})")
            else:
                logger.info(f"[{stage}] Auto-selected {kind.value}")
            return kind
        skipped.append(f"{kind.value}: {capability.reason}")

    # The classical backend passes every gate, so this only happens with a broken priority list
    raise CapabilityUnavailableError(stage or "backend", "No backend available: " + "; ".join(skipped))


def should_fall_back(
    choice: BackendChoice,
    kind: BackendKind,
    error: AssemblyError,
    degrade_pinned: bool = False,
) -> bool:
    """
    Whether a runtime failure of kind should be retried on the classical backend.

    Auto-selected accelerated backends degrade on capability/model/processing errors.
    With degrade_pinned, a pinned backend also degrades on processing failures; its
    selection-time errors stay fatal.
    """
    if not kind.accelerated or error.error_type not in FALLBACK_ERROR_TYPES:
        return False
    if choice.is_pinned:
        return degrade_pinned and error.error_type == AssemblyErrorType.TRANSIENT_PROCESSING_FAILURE
    return True


def log_fallback(stage: str, failed: BackendKind, fallback: BackendKind, error: AssemblyError) -> None:
    logger.warning("=" * 60)
    logger.warning(f"{stage.upper()} FALLBACK: {failed.value} -> {fallback.value}")
    logger.warning(f"  Reason: {error}")
    logger.warning("  Re-running every frame through the classical backend")
    logger.warning("=" * 60)
