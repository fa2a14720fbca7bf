"""
Tests for the upscale stage: selection, output geometry, submission modes and fallback.
"""

import numpy as np
import pytest
from unittest.mock import patch

from framesmith.configuration import AUTO, Pinned, SubmissionMode, UpscaleBackendKind
from framesmith.frames import FrameSequence
from framesmith.ai_upscaler.capabilities import CapabilityProbe
from framesmith.ai_upscaler.super_resolution import LanczosBackend, UpscaleParameters, stabilize
from framesmith.services.assembly_errors import (
    AssemblyCancelledError,
    AssemblyErrorType,
    CapabilityUnavailableError,
    FrameTooLargeError,
    InsufficientFramesError,
    InvalidFactorError,
    ModelDownloadRequiredError,
    ProcessingFailureError,
)
from framesmith.services.cancellation import CancellationToken
from framesmith.services.upscale_stage import UpscaleStage, upscale

from conftest import CPU_PLATFORM, GPU_PLATFORM, BackendRegistry, FakeAcceleratedUpscaler


class RecordingProgress:
    def __init__(self):
        self.calls = []

    def __call__(self, current, total, message=""):
        self.calls.append((current, total, message))

    @property
    def fractions(self):
        return [c / t for c, t, _ in self.calls]


class TestUpscaleStage:
    """Happy-path behaviour."""

    def test_output_geometry_and_count(self, gpu_probe, make_sequence):
        registry = BackendRegistry(FakeAcceleratedUpscaler(), LanczosBackend())
        stage = UpscaleStage(gpu_probe, backend_factory=registry)

        result = stage.run(make_sequence(4, width=64, height=48), factor=2)

        assert len(result.frames) == 4
        assert all(f.load().shape == (96, 128, 3) for f in result.frames)
        assert result.backend_used == "realesrgan_temporal"
        assert not result.fell_back

    def test_first_frame_random_then_sequential(self, gpu_probe, make_sequence):
        upscaler = FakeAcceleratedUpscaler()
        stage = UpscaleStage(gpu_probe, backend_factory=BackendRegistry(upscaler, LanczosBackend()))
        stage.run(make_sequence(3), factor=2)

        modes = [params.mode for params in upscaler.calls]
        assert modes == [SubmissionMode.RANDOM, SubmissionMode.SEQUENTIAL, SubmissionMode.SEQUENTIAL]
        assert upscaler.calls[0].previous_source is None
        assert upscaler.calls[1].previous_output.shape == (96, 128, 3)
        assert upscaler.setup_calls == 1
        assert upscaler.teardown_calls == 1

    def test_cpu_host_auto_selects_lanczos(self, cpu_probe, make_sequence):
        registry = BackendRegistry(FakeAcceleratedUpscaler(), LanczosBackend())
        result = UpscaleStage(cpu_probe, backend_factory=registry).run(make_sequence(2), factor=3)
        assert result.backend_used == "lanczos"
        assert registry.created[0][0] == UpscaleBackendKind.LANCZOS
        assert result.frames[0].load().shape == (144, 192, 3)

    def test_metadata_is_carried(self, gpu_probe, make_sequence):
        sequence = make_sequence(2)
        sequence.metadata.prompt = "harbor at night"
        registry = BackendRegistry(FakeAcceleratedUpscaler(), LanczosBackend())
        result = UpscaleStage(gpu_probe, backend_factory=registry).run(sequence, factor=2)
        assert result.frames.metadata.prompt == "harbor at night"
        assert len(sequence) == 2

    def test_progress_reaches_total(self, gpu_probe, make_sequence):
        progress = RecordingProgress()
        registry = BackendRegistry(FakeAcceleratedUpscaler(), LanczosBackend())
        UpscaleStage(gpu_probe, backend_factory=registry).run(make_sequence(4), factor=2, progress=progress)
        assert [c for c, _, _ in progress.calls] == [1, 2, 3, 4]


class TestUpscaleValidation:
    """Input and selection errors."""

    @pytest.mark.parametrize("factor", [0, 1])
    def test_factor_below_two(self, gpu_probe, make_sequence, factor):
        with pytest.raises(InvalidFactorError):
            UpscaleStage(gpu_probe).run(make_sequence(2), factor=factor)

    def test_empty_sequence(self, gpu_probe):
        with pytest.raises(InsufficientFramesError):
            UpscaleStage(gpu_probe).run(FrameSequence(), factor=2)

    def test_pinned_oversized_input(self, gpu_probe, make_sequence):
        stage = UpscaleStage(gpu_probe, backend_factory=BackendRegistry())
        with pytest.raises(FrameTooLargeError) as exc_info:
            stage.run(make_sequence(1, width=2048, height=1152), 2, Pinned(UpscaleBackendKind.REALESRGAN_COMPACT))
        assert exc_info.value.max_width == 1920

    def test_pinned_unsupported_factor(self, gpu_probe, make_sequence):
        with pytest.raises(InvalidFactorError) as exc_info:
            UpscaleStage(gpu_probe).run(make_sequence(1), 3, Pinned(UpscaleBackendKind.REALESRGAN_COMPACT))
        assert exc_info.value.supported == [2, 4]

    def test_pinned_without_weights(self, model_manager, make_sequence):
        probe = CapabilityProbe(model_manager=model_manager, platform=GPU_PLATFORM)
        with pytest.raises(ModelDownloadRequiredError) as exc_info:
            UpscaleStage(probe).run(make_sequence(1), 2, Pinned(UpscaleBackendKind.REALESRGAN_TEMPORAL))
        assert exc_info.value.error_type == AssemblyErrorType.MODEL_NOT_READY

    def test_pinned_on_cpu_host(self, cpu_probe, make_sequence):
        with pytest.raises(CapabilityUnavailableError) as exc_info:
            UpscaleStage(cpu_probe).run(make_sequence(1), 2, Pinned(UpscaleBackendKind.REALESRGAN_TEMPORAL))
        assert exc_info.value.code == "environment"

    def test_wrong_output_size_triggers_fallback(self, gpu_probe, make_sequence):
        class Shrinker(FakeAcceleratedUpscaler):
            def process(self, params):
                return params.source

        stage = UpscaleStage(gpu_probe, backend_factory=BackendRegistry(Shrinker(), LanczosBackend()))
        result = stage.run(make_sequence(2), 2, Pinned(UpscaleBackendKind.REALESRGAN_TEMPORAL))

        assert result.fell_back
        assert isinstance(result.fallback_reason, ProcessingFailureError)
        assert "expected 128x96" in str(result.fallback_reason)
        assert all(f.load().shape == (96, 128, 3) for f in result.frames)


class TestUpscaleFallback:
    """Runtime failures degrade to Lanczos; selection-time errors do not."""

    def test_auto_failure_reruns_every_frame_with_lanczos(self, gpu_probe, make_sequence):
        upscaler = FakeAcceleratedUpscaler(fail_at=5)
        lanczos = LanczosBackend()
        registry = BackendRegistry(upscaler, lanczos)
        progress = RecordingProgress()

        result = UpscaleStage(gpu_probe, backend_factory=registry).run(
            make_sequence(10), factor=2, backend=AUTO, progress=progress,
        )

        assert len(result.frames) == 10
        assert result.backend_used == "lanczos"
        assert result.fell_back
        assert isinstance(result.fallback_reason, ProcessingFailureError)
        assert result.fallback_reason.frame_index == 5
        assert [kind for kind, _ in registry.created] == [
            UpscaleBackendKind.REALESRGAN_TEMPORAL, UpscaleBackendKind.LANCZOS,
        ]
        assert upscaler.teardown_calls == 1

        fractions = progress.fractions
        assert fractions == sorted(fractions)
        assert fractions[-1] == pytest.approx(1.0)

    def test_fallback_frames_are_uniform_lanczos(self, gpu_probe, make_sequence):
        sequence = make_sequence(6)
        registry = BackendRegistry(FakeAcceleratedUpscaler(fail_at=2), LanczosBackend())
        result = UpscaleStage(gpu_probe, backend_factory=registry).run(sequence, factor=2)

        reference = LanczosBackend()
        for i, frame in enumerate(result.frames):
            expected = reference.process(UpscaleParameters(sequence.load(i), 2))
            np.testing.assert_array_equal(frame.load(), expected)

    def test_pinned_runtime_failure_falls_back_to_lanczos(self, gpu_probe, make_sequence):
        upscaler = FakeAcceleratedUpscaler(fail_at=5)
        registry = BackendRegistry(upscaler, LanczosBackend())
        progress = RecordingProgress()

        result = UpscaleStage(gpu_probe, backend_factory=registry).run(
            make_sequence(10), 2, Pinned(UpscaleBackendKind.REALESRGAN_TEMPORAL), progress=progress,
        )

        assert len(result.frames) == 10
        assert result.backend_used == "lanczos"
        assert result.fell_back
        assert result.fallback_reason.frame_index == 5
        assert upscaler.teardown_calls == 1
        assert progress.fractions == sorted(progress.fractions)

    def test_pinned_model_error_during_setup_is_fatal(self, gpu_probe, make_sequence):
        class WeightsVanished(FakeAcceleratedUpscaler):
            def setup(self, width, height, factor, **kwargs):
                raise ModelDownloadRequiredError(self.kind.value)

        registry = BackendRegistry(WeightsVanished(), LanczosBackend())
        with pytest.raises(ModelDownloadRequiredError):
            UpscaleStage(gpu_probe, backend_factory=registry).run(
                make_sequence(4), 2, Pinned(UpscaleBackendKind.REALESRGAN_TEMPORAL),
            )
        assert len(registry.created) == 1

    def test_cancellation_is_not_a_fallback_reason(self, gpu_probe, make_sequence):
        token = CancellationToken()

        class CancelAfterFirst(FakeAcceleratedUpscaler):
            def process(self, params):
                token.cancel()
                return super().process(params)

        registry = BackendRegistry(CancelAfterFirst(), LanczosBackend())
        with pytest.raises(AssemblyCancelledError):
            UpscaleStage(gpu_probe, backend_factory=registry).run(make_sequence(4), 2, cancellation=token)
        assert len(registry.created) == 1


class TestUpscaleFunction:
    """Module-level upscale() convenience wrapper."""

    def test_returns_upscaled_frames(self, cpu_probe, make_sequence):
        frames = upscale(make_sequence(3, width=32, height=24), 2, probe=cpu_probe)
        assert len(frames) == 3
        assert all(f.load().shape == (48, 64, 3) for f in frames)

    def test_builds_default_probe(self, cpu_probe, make_sequence):
        with patch("framesmith.services.upscale_stage.CapabilityProbe", return_value=cpu_probe) as probe_cls:
            frames = upscale(make_sequence(2), 2)
        probe_cls.assert_called_once_with()
        assert len(frames) == 2


class TestStabilize:
    """Temporal blending used by the Real-ESRGAN temporal backend."""

    def test_static_region_pulls_toward_previous_output(self):
        source = np.full((8, 8, 3), 100, dtype=np.uint8)
        output = np.full((16, 16, 3), 200, dtype=np.uint8)
        previous_output = np.full((16, 16, 3), 100, dtype=np.uint8)

        blended = stabilize(source, source.copy(), output, previous_output)
        assert blended.shape == output.shape
        assert 100 < blended.mean() < 200

    def test_moving_region_keeps_new_output(self):
        source = np.full((8, 8, 3), 255, dtype=np.uint8)
        previous_source = np.zeros((8, 8, 3), dtype=np.uint8)
        output = np.full((16, 16, 3), 200, dtype=np.uint8)
        previous_output = np.zeros((16, 16, 3), dtype=np.uint8)

        blended = stabilize(source, previous_source, output, previous_output)
        np.testing.assert_array_equal(blended, output)
