"""
Pytest configuration and shared fixtures for framesmith tests.

Nothing here needs a GPU, model weights or an ffmpeg binary: accelerated backends
and the frame writer are replaced with in-process fakes.
"""

import pytest
import numpy as np
from pathlib import Path
from unittest.mock import patch

from framesmith.configuration import InterpolationBackendKind, UpscaleBackendKind
from framesmith.frames import FrameSequence
from framesmith.ai_upscaler.capabilities import CapabilityProbe, PlatformInfo
from framesmith.ai_upscaler.frame_interpolator import BlendBackend
from framesmith.ai_upscaler.model_manager import ModelManager
from framesmith.ai_upscaler.super_resolution import LanczosBackend
from framesmith.ai_upscaler.utils import resize_lanczos, scaled_size


GPU_PLATFORM = PlatformInfo(
    torch_version=(2, 3),
    accelerator='cuda',
    device_name='Fake GPU',
    realesrgan_installed=True,
    headless=False,
)

CPU_PLATFORM = PlatformInfo(
    torch_version=(2, 3),
    accelerator=None,
    realesrgan_installed=True,
)


# =============================================================================
# Fake backends
# =============================================================================

class FakeAcceleratedUpscaler(LanczosBackend):
    """Lanczos output under an accelerated kind; can be told to fail at a frame."""

    def __init__(self, kind=UpscaleBackendKind.REALESRGAN_TEMPORAL, fail_at=None):
        self.kind = kind
        self.fail_at = fail_at
        self.calls = []
        self.setup_calls = 0
        self.teardown_calls = 0

    def setup(self, width, height, factor, **kwargs):
        self.setup_calls += 1

    def process(self, params):
        index = len(self.calls)
        self.calls.append(params)
        if self.fail_at is not None and index == self.fail_at:
            raise RuntimeError("CUDA out of memory")
        height, width = params.source.shape[:2]
        return resize_lanczos(params.source, scaled_size(width, height, params.factor))

    def teardown(self):
        self.teardown_calls += 1


class FakeRIFE(BlendBackend):
    """Blend output under the RIFE kind; can be told to fail at a pair."""

    kind = InterpolationBackendKind.RIFE

    def __init__(self, fail_at=None):
        self.fail_at = fail_at
        self.calls = []

    def process(self, params):
        index = len(self.calls)
        self.calls.append(params)
        if self.fail_at is not None and index == self.fail_at:
            raise RuntimeError("device lost")
        return super().process(params)


class BackendRegistry:
    """backend_factory replacement that hands out (and remembers) fakes."""

    def __init__(self, accelerated=None, classical=None):
        self.accelerated = accelerated
        self.classical = classical
        self.created = []

    def __call__(self, kind, **kwargs):
        backend = self.accelerated if kind.accelerated else self.classical
        self.created.append((kind, backend))
        return backend


class FakeWriter:
    """Stands in for FrameWriter: records frames and writes a placeholder file on finish."""

    instances = []

    def __init__(self, output_path, width, height, frame_rate, codec=None, quality=None,
                 cancellation=None, **kwargs):
        self.output_path = Path(output_path)
        self.width = width
        self.height = height
        self.frame_rate = frame_rate
        self.codec = codec
        self.quality = quality
        self.frames = []
        self.started = False
        self.finished = False
        self.aborted = False
        self.busy_polls = 0
        FakeWriter.instances.append(self)

    @property
    def ready_for_more_data(self):
        if self.busy_polls > 0:
            self.busy_polls -= 1
            return False
        return True

    def start(self):
        self.started = True
        return self

    def append(self, image, frame_index):
        self.frames.append((frame_index, image.shape))

    def finish(self):
        self.output_path.write_bytes(b"mov")
        self.finished = True
        return self.output_path

    def abort(self):
        self.aborted = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sample_frame():
    """Create a sample video frame for testing"""
    return np.random.randint(0, 255, (480, 640, 3), dtype=np.uint8)


@pytest.fixture
def make_sequence():
    """Factory for in-memory sequences of distinct frames"""
    def _make(count=4, width=64, height=48):
        images = [np.full((height, width, 3), (i * 20) % 256, dtype=np.uint8) for i in range(count)]
        return FrameSequence.from_images(images)
    return _make


@pytest.fixture
def model_manager(tmp_path):
    """Model manager over an empty weights directory"""
    return ModelManager(weights_dir=tmp_path / "weights")


@pytest.fixture
def ready_model_manager(tmp_path):
    """Model manager with every artifact present on disk"""
    manager = ModelManager(weights_dir=tmp_path / "weights")
    manager.weights_dir.mkdir(parents=True)
    for kind in ("realesrgan_temporal", "realesrgan_compact", "rife"):
        manager.artifact_path(kind).write_bytes(b"\x80\x02weights")
    return manager


@pytest.fixture
def gpu_probe(ready_model_manager):
    """Probe on a fake CUDA host with all weights present"""
    return CapabilityProbe(model_manager=ready_model_manager, platform=GPU_PLATFORM)


@pytest.fixture
def cpu_probe(ready_model_manager):
    """Probe on a host without an accelerator"""
    return CapabilityProbe(model_manager=ready_model_manager, platform=CPU_PLATFORM)


@pytest.fixture
def fake_writer():
    FakeWriter.instances = []
    return FakeWriter


@pytest.fixture
def mock_torch_cuda():
    """Mock torch.cuda to avoid requiring GPU"""
    with patch('torch.cuda.is_available', return_value=False), \
         patch('torch.cuda.device_count', return_value=0):
        yield
