"""
Tests for model artifact status and downloads.

The network is never touched: wget/gdown are patched to drop files on disk.
"""

import threading
import zipfile

import pytest
from unittest.mock import MagicMock, patch

from framesmith.configuration import InterpolationBackendKind, UpscaleBackendKind
from framesmith.ai_upscaler.model_manager import ModelManager, ModelState
from framesmith.services.assembly_errors import AssemblyErrorType, ModelDownloadFailedError


class TestStatus:
    """Status checks never download."""

    def test_classical_backend_needs_no_artifact(self, model_manager):
        assert not model_manager.requires_artifact(UpscaleBackendKind.LANCZOS)
        assert model_manager.artifact_path("lanczos") is None
        assert model_manager.status(UpscaleBackendKind.LANCZOS).is_ready

    def test_missing_file_requires_download(self, model_manager):
        status = model_manager.status(InterpolationBackendKind.RIFE)
        assert status.state == ModelState.DOWNLOAD_REQUIRED
        assert status.to_dict() == {"state": "download_required", "progress": None}

    def test_present_file_is_ready(self, ready_model_manager):
        assert ready_model_manager.status("realesrgan_temporal").is_ready

    def test_leftover_zip_is_not_ready(self, model_manager):
        model_manager.weights_dir.mkdir(parents=True)
        model_manager.artifact_path("rife").write_bytes(b"PK\x03\x04rest-of-zip")
        assert model_manager.status("rife").state == ModelState.DOWNLOAD_REQUIRED

    def test_empty_file_is_not_ready(self, model_manager):
        model_manager.weights_dir.mkdir(parents=True)
        model_manager.artifact_path("rife").touch()
        assert not model_manager.status("rife").is_ready


class TestDownload:
    """download() is idempotent and single-flight."""

    def test_ready_artifact_skips_network(self, ready_model_manager):
        progress = MagicMock()
        with patch.object(ready_model_manager, "_fetch") as fetch:
            path = ready_model_manager.download(InterpolationBackendKind.RIFE, progress=progress)
        fetch.assert_not_called()
        progress.assert_called_once_with(1.0)
        assert path == ready_model_manager.artifact_path("rife")

    def test_http_artifact_via_wget(self, model_manager):
        def fake_download(url, out, bar):
            bar(50, 100)
            with open(out, "wb") as f:
                f.write(b"\x80\x02weights")
            bar(100, 100)
            return out

        reported = []
        with patch("wget.download", side_effect=fake_download) as download:
            path = model_manager.download(UpscaleBackendKind.REALESRGAN_COMPACT, progress=reported.append)

        assert download.call_args[0][0].endswith("realesr-general-x4v3.pth")
        assert path.read_bytes() == b"\x80\x02weights"
        assert model_manager.status("realesrgan_compact").is_ready
        assert reported == sorted(reported)
        assert reported[-1] == 1.0

    def test_gdrive_zip_is_unpacked(self, model_manager):
        def fake_download(url, output, quiet):
            with zipfile.ZipFile(output, "w") as zf:
                zf.writestr("train_log/flownet.pkl", b"\x80\x02flownet")
            return output

        with patch("gdown.download", side_effect=fake_download):
            path = model_manager.download("rife")

        assert path.read_bytes() == b"\x80\x02flownet"
        assert model_manager.status("rife").is_ready

    def test_zip_without_weights_fails(self, model_manager):
        def fake_download(url, output, quiet):
            with zipfile.ZipFile(output, "w") as zf:
                zf.writestr("README.md", b"nothing here")
            return output

        with patch("gdown.download", side_effect=fake_download):
            with pytest.raises(ModelDownloadFailedError):
                model_manager.download("rife")
        assert not model_manager.status("rife").is_ready

    def test_network_failure_is_wrapped(self, model_manager):
        with patch("wget.download", side_effect=OSError("connection reset")):
            with pytest.raises(ModelDownloadFailedError) as exc_info:
                model_manager.download("realesrgan_temporal")
        assert exc_info.value.error_type == AssemblyErrorType.IO_FAILURE
        assert exc_info.value.backend == "realesrgan_temporal"

    def test_concurrent_callers_share_one_transfer(self, model_manager):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_fetch(key, path, transfer):
            calls.append(key)
            started.set()
            release.wait(5)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"\x80\x02weights")

        results = []
        with patch.object(model_manager, "_fetch", side_effect=slow_fetch):
            first = threading.Thread(target=lambda: results.append(model_manager.download("rife")))
            first.start()
            started.wait(5)

            assert model_manager.status("rife").state == ModelState.DOWNLOADING

            second = threading.Thread(target=lambda: results.append(model_manager.download("rife")))
            second.start()
            release.set()
            first.join(5)
            second.join(5)

        assert calls == ["rife"]
        assert len(results) == 2
        assert model_manager.status("rife").is_ready
