"""
Capability Probe Module

Answers "can backend X run right now for frames of this size?" for every super
resolution and interpolation backend. Gates are checked in a fixed order and the
first one that fails is reported:

1. Version gate - torch >= 2.0 and, for Real-ESRGAN, the realesrgan/basicsr packages
2. Environment gate - a real accelerator (CUDA or Apple MPS); CPU-only, headless and
   emulated hosts report Unavailable even when the version gate passes
3. Geometry gate - per-backend maximum input size and supported factors
4. Model readiness - weights READY, DOWNLOAD_REQUIRED or DOWNLOADING(progress)

Classical backends (Lanczos, blend) pass every gate. Probing has no side effects;
``download_model`` is the separate, explicit way to fetch weights.
"""

import importlib.util
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from framesmith.configuration import (
    BackendKind,
    InterpolationBackendKind,
    Settings,
    UpscaleBackendKind,
    get_settings,
)
from framesmith.constants import (
    CLASSICAL_SCALE_FACTORS,
    MAX_INPUT_GEOMETRY,
    MIN_TORCH_VERSION,
    SUPPORTED_SCALE_FACTORS,
)
from framesmith.ai_upscaler.model_manager import (
    DownloadProgress,
    ModelManager,
    ModelState,
    ModelStatus,
    get_model_manager,
)
from framesmith.services.assembly_errors import InvalidFactorError

logger = logging.getLogger(__name__)


class ReasonCode(str, Enum):
    """Which gate rejected a backend."""
    VERSION = "version"
    ENVIRONMENT = "environment"
    GEOMETRY = "geometry"
    FACTOR = "factor"
    MODEL_DOWNLOAD_REQUIRED = "model_download_required"
    MODEL_DOWNLOADING = "model_downloading"


@dataclass(frozen=True)
class Available:
    kind: BackendKind

    @property
    def is_available(self) -> bool:
        return True


@dataclass(frozen=True)
class Unavailable:
    kind: BackendKind
    reason: str
    code: ReasonCode
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_available(self) -> bool:
        return False


Capability = Union[Available, Unavailable]


@dataclass(frozen=True)
class PlatformInfo:
    """Snapshot of what this host can run."""
    torch_version: Optional[Tuple[int, int]] = None
    accelerator: Optional[str] = None
    device_name: Optional[str] = None
    realesrgan_installed: bool = False
    headless: bool = False


def _parse_version(version: str) -> Optional[Tuple[int, int]]:
    match = re.match(r"(\d+)\.(\d+)", version)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def detect_platform(settings: Optional[Settings] = None) -> PlatformInfo:
    """Detect torch, accelerator and Real-ESRGAN availability."""
    settings = settings or get_settings()
    torch_version = None
    accelerator = None
    device_name = None

    try:
        import torch
        torch_version = _parse_version(torch.__version__)
        if torch.cuda.is_available():
            accelerator = 'cuda'
            device_name = torch.cuda.get_device_name(0)
        else:
            mps = getattr(torch.backends, 'mps', None)
            if mps is not None and mps.is_available():
                accelerator = 'mps'
                device_name = 'Apple MPS'
    except ImportError:
        logger.debug("PyTorch not installed, accelerated backends disabled")

    if settings.device == 'cpu':
        accelerator = None
        device_name = None

    realesrgan_installed = (
        importlib.util.find_spec('realesrgan') is not None
        and importlib.util.find_spec('basicsr') is not None
    )

    return PlatformInfo(
        torch_version=torch_version,
        accelerator=accelerator,
        device_name=device_name,
        realesrgan_installed=realesrgan_installed,
        headless=settings.force_headless,
    )


def _is_accelerated(kind: BackendKind) -> bool:
    return kind.accelerated


class CapabilityProbe:
    """
    Per-backend capability checks.

    Args:
        model_manager: Source of model readiness (defaults to the shared manager)
        platform: Fixed platform snapshot; when None the platform is detected on every probe
        detector: Platform detection function (for tests)
    """

    def __init__(
        self,
        model_manager: Optional[ModelManager] = None,
        platform: Optional[PlatformInfo] = None,
        detector: Callable[[], PlatformInfo] = detect_platform,
    ):
        self.model_manager = model_manager or get_model_manager()
        self._platform = platform
        self._detector = detector

    @property
    def platform(self) -> PlatformInfo:
        return self._platform if self._platform is not None else self._detector()

    def snapshot(self) -> "CapabilityProbe":
        """Probe pinned to the current platform facts, for use within one run."""
        return CapabilityProbe(self.model_manager, platform=self.platform)

    def probe(self, kind: BackendKind, width: int, height: int, factor: Optional[int] = None) -> Capability:
        """
        Check whether kind can process frames of width x height.

        Args:
            kind: Backend to check
            width: Input frame width
            height: Input frame height
            factor: Optional scale factor to validate against the backend's supported set
        """
        if not _is_accelerated(kind):
            return Available(kind)

        platform = self.platform

        # (a) version gate
        if platform.torch_version is None:
            return Unavailable(kind, "PyTorch is not installed", ReasonCode.VERSION)
        if platform.torch_version < MIN_TORCH_VERSION:
            required = ".".join(str(v) for v in MIN_TORCH_VERSION)
            found = ".".join(str(v) for v in platform.torch_version)
            return Unavailable(
                kind, f"PyTorch {required}+ required, found {found}", ReasonCode.VERSION,
                {"required": required, "found": found},
            )
        if isinstance(kind, UpscaleBackendKind) and not platform.realesrgan_installed:
            return Unavailable(kind, "realesrgan/basicsr packages are not installed", ReasonCode.VERSION)

        # (b) environment gate
        if platform.headless:
            return Unavailable(kind, "Accelerated backends disabled in headless mode", ReasonCode.ENVIRONMENT)
        if platform.accelerator is None:
            return Unavailable(kind, "No CUDA or MPS accelerator available", ReasonCode.ENVIRONMENT)

        # (c) geometry gate
        max_width, max_height = MAX_INPUT_GEOMETRY[kind.value]
        if width > max_width or height > max_height:
            return Unavailable(
                kind,
                f"Frame size {width}x{height} exceeds maximum {max_width}x{max_height}",
                ReasonCode.GEOMETRY,
                {"requested": [width, height], "maximum": [max_width, max_height]},
            )
        if factor is not None and isinstance(kind, UpscaleBackendKind):
            supported = SUPPORTED_SCALE_FACTORS.get(kind.value)
            if supported is not None and factor not in supported:
                return Unavailable(
                    kind, f"Scale factor {factor} not supported", ReasonCode.FACTOR,
                    {"factor": factor, "supported": list(supported)},
                )

        # (d) model readiness
        status = self.model_manager.status(kind)
        if status.state == ModelState.DOWNLOAD_REQUIRED:
            return Unavailable(kind, "Model weights must be downloaded", ReasonCode.MODEL_DOWNLOAD_REQUIRED)
        if status.state == ModelState.DOWNLOADING:
            return Unavailable(
                kind, f"Model weights downloading ({(status.progress or 0.0):.0%})",
                ReasonCode.MODEL_DOWNLOADING, {"progress": status.progress},
            )

        return Available(kind)

    def model_status(self, kind: BackendKind) -> ModelStatus:
        return self.model_manager.status(kind)

    def supported_scale_factors(self, kind: UpscaleBackendKind, width: int, height: int) -> List[int]:
        """Scale factors kind accepts for this input size (empty if the size is over its limit)."""
        if not kind.accelerated:
            return list(CLASSICAL_SCALE_FACTORS)
        max_width, max_height = MAX_INPUT_GEOMETRY[kind.value]
        if width > max_width or height > max_height:
            return []
        return list(SUPPORTED_SCALE_FACTORS[kind.value] or CLASSICAL_SCALE_FACTORS)

    def download_model(
        self,
        kind: BackendKind,
        width: int,
        height: int,
        factor: int,
        progress: Optional[DownloadProgress] = None,
    ):
        """
        Fetch kind's model weights. Returns immediately when already READY.

        Raises:
            InvalidFactorError: If factor is not one kind supports
            ModelDownloadFailedError: If the transfer fails
        """
        if isinstance(kind, UpscaleBackendKind) and kind.accelerated:
            supported = self.supported_scale_factors(kind, width, height) or SUPPORTED_SCALE_FACTORS[kind.value]
            if factor not in supported:
                raise InvalidFactorError(factor, supported, backend=kind.value)
        return self.model_manager.download(kind, progress=progress)

    def describe(self, width: int, height: int, factor: Optional[int] = None) -> List[Dict[str, Any]]:
        """Probe every backend, for the capabilities endpoint."""
        report = []
        kinds: List[BackendKind] = list(UpscaleBackendKind) + list(InterpolationBackendKind)
        for kind in kinds:
            capability = self.probe(kind, width, height, factor if isinstance(kind, UpscaleBackendKind) else None)
            entry: Dict[str, Any] = {
                "backend": kind.value,
                "stage": "upscale" if isinstance(kind, UpscaleBackendKind) else "interpolation",
                "accelerated": kind.accelerated,
                "available": capability.is_available,
                "model_status": self.model_status(kind).to_dict(),
            }
            if isinstance(capability, Unavailable):
                entry["reason"] = capability.reason
                entry["reason_code"] = capability.code.value
                entry["detail"] = capability.detail
            if isinstance(kind, UpscaleBackendKind):
                entry["supported_scale_factors"] = self.supported_scale_factors(kind, width, height)
            report.append(entry)
        return report
