"""
Model Management Module

Tracks the on-disk weight files each ML backend needs and fetches them on request.

- Real-ESRGAN weights are plain .pth release assets, fetched with wget
- RIFE (Practical-RIFE v4.25) ships as a Google Drive zip holding flownet.pkl,
  fetched with gdown and unpacked

Status is a tri-state per artifact: READY, DOWNLOAD_REQUIRED, or DOWNLOADING with a
progress fraction. Checking status never downloads. ``download()`` is idempotent: when
the artifact is already READY it reports 1.0 and returns without touching the network,
and concurrent callers for the same artifact share one transfer.
"""

import logging
import os
import shutil
import tempfile
import threading
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from framesmith.configuration import get_settings
from framesmith.constants import MODEL_ARTIFACTS, ZIP_MAGIC
from framesmith.services.assembly_errors import AssemblyError, ModelDownloadFailedError

logger = logging.getLogger(__name__)

DownloadProgress = Callable[[float], None]


class ModelState(str, Enum):
    READY = "ready"
    DOWNLOAD_REQUIRED = "download_required"
    DOWNLOADING = "downloading"


@dataclass(frozen=True)
class ModelStatus:
    """Readiness of one backend's model artifact."""
    state: ModelState
    progress: Optional[float] = None

    @property
    def is_ready(self) -> bool:
        return self.state == ModelState.READY

    def to_dict(self) -> dict:
        return {"state": self.state.value, "progress": self.progress}


READY = ModelStatus(ModelState.READY)


class _Transfer:
    """One in-progress download shared by every caller asking for it."""

    def __init__(self):
        self.done = threading.Event()
        self.progress = 0.0
        self.error: Optional[BaseException] = None
        self.listeners = []

    def report(self, fraction: float) -> None:
        self.progress = max(self.progress, min(1.0, fraction))
        for listener in list(self.listeners):
            listener(self.progress)


def _kind_key(kind: Union[str, Enum]) -> str:
    return kind.value if isinstance(kind, Enum) else str(kind)


class ModelManager:
    """
    Coordinates model artifacts for ML backends.

    Example:
        manager = get_model_manager()
        if not manager.status("rife").is_ready:
            manager.download("rife", progress=lambda p: print(f"{p:.0%}"))
    """

    def __init__(self, weights_dir: Optional[Path] = None):
        self.weights_dir = Path(weights_dir) if weights_dir is not None else get_settings().weights_dir
        self._transfers: Dict[str, _Transfer] = {}
        self._lock = threading.Lock()

    @staticmethod
    def requires_artifact(kind) -> bool:
        return _kind_key(kind) in MODEL_ARTIFACTS

    def artifact_path(self, kind) -> Optional[Path]:
        """Where the weights for kind live (None for classical backends)."""
        artifact = MODEL_ARTIFACTS.get(_kind_key(kind))
        if artifact is None:
            return None
        return self.weights_dir / artifact["filename"]

    def _is_valid(self, path: Path) -> bool:
        if not path.is_file() or path.stat().st_size == 0:
            return False
        with open(path, 'rb') as f:
            header = f.read(4)
        # A zip left behind by an interrupted RIFE install is not usable weights
        return header != ZIP_MAGIC

    def status(self, kind) -> ModelStatus:
        """Current readiness of kind's artifact. Never triggers a download."""
        key = _kind_key(kind)
        path = self.artifact_path(key)
        if path is None:
            return READY
        with self._lock:
            transfer = self._transfers.get(key)
        if transfer is not None and not transfer.done.is_set():
            return ModelStatus(ModelState.DOWNLOADING, transfer.progress)
        if self._is_valid(path):
            return READY
        return ModelStatus(ModelState.DOWNLOAD_REQUIRED)

    def download(self, kind, progress: Optional[DownloadProgress] = None) -> Optional[Path]:
        """
        Fetch kind's artifact if it is not already on disk.

        Args:
            kind: Backend kind (enum or its string value)
            progress: Optional callback receiving fractions in [0, 1]

        Returns:
            Path to the weights, or None for backends without an artifact

        Raises:
            ModelDownloadFailedError: If the transfer or unpacking fails
        """
        key = _kind_key(kind)
        path = self.artifact_path(key)
        if path is None or self._is_valid(path):
            if progress:
                progress(1.0)
            return path

        with self._lock:
            transfer = self._transfers.get(key)
            owner = transfer is None or transfer.done.is_set()
            if owner:
                transfer = _Transfer()
                self._transfers[key] = transfer
            if progress:
                transfer.listeners.append(progress)

        if not owner:
            logger.info(f"Joining in-progress download for {key}")
            transfer.done.wait()
            if transfer.error is not None:
                raise ModelDownloadFailedError(key, transfer.error)
            return path

        try:
            self._fetch(key, path, transfer)
            transfer.report(1.0)
            return path
        except AssemblyError as e:
            transfer.error = e
            raise
        except Exception as e:
            transfer.error = e
            logger.error(f"Model download for {key} failed: {e}")
            raise ModelDownloadFailedError(key, e) from e
        finally:
            transfer.done.set()

    def _fetch(self, key: str, path: Path, transfer: _Transfer) -> None:
        artifact = MODEL_ARTIFACTS[key]
        self.weights_dir.mkdir(parents=True, exist_ok=True)

        logger.info("=" * 60)
        logger.info(f"DOWNLOADING MODEL: {key}")
        logger.info(f"  Source: {artifact['url']}")
        logger.info(f"  Target: {path}")
        logger.info("=" * 60)

        with tempfile.TemporaryDirectory(dir=self.weights_dir) as tmpdir:
            tmp_path = Path(tmpdir) / 'download'
            transfer.report(0.0)

            if artifact["source"] == "gdrive":
                import gdown
                result = gdown.download(artifact["url"], str(tmp_path), quiet=True)
                if result is None or not tmp_path.exists():
                    raise ModelDownloadFailedError(key, RuntimeError("gdown returned no file"))
                transfer.report(0.9)
            else:
                import wget

                def bar(current, total, width=80):
                    if total:
                        transfer.report(0.95 * current / total)
                    return ""

                wget.download(artifact["url"], out=str(tmp_path), bar=bar)

            with open(tmp_path, 'rb') as f:
                header = f.read(4)
            if header == ZIP_MAGIC:
                self._extract_pickle(key, tmp_path, path)
            else:
                os.replace(tmp_path, path)

        logger.info(f"✓ {key} weights saved to {path}")

    @staticmethod
    def _extract_pickle(key: str, archive: Path, destination: Path) -> None:
        with zipfile.ZipFile(archive, 'r') as zf:
            members = [n for n in zf.namelist() if n.endswith('flownet.pkl')]
            if not members:
                raise ModelDownloadFailedError(key, RuntimeError(f"No flownet.pkl in archive: {zf.namelist()}"))
            staging = destination.with_suffix(destination.suffix + '.tmp')
            with zf.open(members[0]) as src, open(staging, 'wb') as dst:
                shutil.copyfileobj(src, dst)
            os.replace(staging, destination)


# Singleton instance for easy access
_manager: Optional[ModelManager] = None


def get_model_manager() -> ModelManager:
    """Get or create the model manager singleton"""
    global _manager
    if _manager is None:
        _manager = ModelManager()
    return _manager
