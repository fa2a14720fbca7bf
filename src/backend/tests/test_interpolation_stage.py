"""
Tests for frame interpolation: output length, endpoints, pass modes, RIFE batching
and fallback to blending.
"""

import numpy as np
import pytest
import torch
from unittest.mock import patch

from framesmith.configuration import AUTO, InterpolationBackendKind, PassMode, Pinned, SubmissionMode
from framesmith.frames import FrameSequence
from framesmith.ai_upscaler.capabilities import CapabilityProbe
from framesmith.ai_upscaler.frame_interpolator import (
    BlendBackend,
    InterpolationParameters,
    RIFEBackend,
    create_interpolation_backend,
    interpolation_phases,
)
from framesmith.services.assembly_errors import (
    InconsistentFrameSizesError,
    InsufficientFramesError,
    InvalidFactorError,
    ModelDownloadRequiredError,
    ProcessingFailureError,
)
from framesmith.ai_upscaler.models.ifnet_arch import IFNet, load_ifnet
from framesmith.services.backend_session import BackendSession
from framesmith.services.interpolation_stage import InterpolationStage, interpolate, interpolated_length

from conftest import GPU_PLATFORM, BackendRegistry, FakeRIFE


def linear_model(first, second, timestep):
    """Stand-in for IFNet: a plain linear blend at each timestep."""
    return first * (1 - timestep) + second * timestep


@pytest.fixture
def rife_cpu(ready_model_manager):
    backend = RIFEBackend(model_manager=ready_model_manager, device="cpu")
    backend.device = torch.device("cpu")
    backend.model = linear_model
    return backend


class TestInterpolationHelpers:

    def test_phases(self):
        assert interpolation_phases(2) == [0.5]
        assert interpolation_phases(4) == [0.25, 0.5, 0.75]

    @pytest.mark.parametrize("count,factor,expected", [
        (81, 2, 161),
        (10, 4, 37),
        (2, 3, 4),
        (1, 2, 1),
        (5, 1, 5),
    ])
    def test_interpolated_length(self, count, factor, expected):
        assert interpolated_length(count, factor) == expected

    def test_create_backend(self, ready_model_manager):
        assert isinstance(create_interpolation_backend(InterpolationBackendKind.BLEND), BlendBackend)
        rife = create_interpolation_backend(InterpolationBackendKind.RIFE, model_manager=ready_model_manager)
        assert isinstance(rife, RIFEBackend)
        assert rife.model_manager is ready_model_manager

    def test_parameters_allocate_destinations(self, sample_frame):
        params = InterpolationParameters(sample_frame, sample_frame, [0.25, 0.5, 0.75])
        assert len(params.destinations) == 3
        assert params.destinations[0].shape == sample_frame.shape

    def test_parameters_reject_mismatched_destinations(self, sample_frame):
        with pytest.raises(ValueError):
            InterpolationParameters(sample_frame, sample_frame, [0.5], destinations=[sample_frame, sample_frame])


class TestInterpolationStage:
    """Sequence-level behaviour."""

    @pytest.mark.parametrize("count,factor", [(2, 2), (5, 2), (4, 3), (3, 4)])
    def test_length_and_endpoints(self, gpu_probe, make_sequence, count, factor):
        sequence = make_sequence(count)
        stage = InterpolationStage(gpu_probe, backend_factory=BackendRegistry(FakeRIFE(), BlendBackend()))

        result = stage.run(sequence, factor)

        assert len(result.frames) == (count - 1) * factor + 1
        assert result.frames[0] is sequence[0]
        assert result.frames[len(result.frames) - 1] is sequence[count - 1]
        # Every original sits at a multiple of factor
        for i in range(count):
            assert result.frames[i * factor] is sequence[i]

    def test_blend_midpoint_values(self, cpu_probe):
        black = np.zeros((16, 16, 3), dtype=np.uint8)
        white = np.full((16, 16, 3), 200, dtype=np.uint8)
        sequence = FrameSequence.from_images([black, white])

        result = InterpolationStage(cpu_probe).run(sequence, 2)

        assert result.backend_used == "blend"
        assert result.frames[1].load().mean() == pytest.approx(100, abs=1)

    def test_one_submission_per_pair_with_modes(self, gpu_probe, make_sequence):
        rife = FakeRIFE()
        stage = InterpolationStage(gpu_probe, backend_factory=BackendRegistry(rife, BlendBackend()))
        stage.run(make_sequence(4), 4)

        assert len(rife.calls) == 3
        assert [p.mode for p in rife.calls] == [SubmissionMode.RANDOM] + [SubmissionMode.SEQUENTIAL] * 2
        assert rife.calls[0].phases == [0.25, 0.5, 0.75]
        assert len(rife.calls[0].destinations) == 3

    def test_multi_pass_only_above_factor_two(self, gpu_probe, make_sequence):
        rife = FakeRIFE()
        stage = InterpolationStage(gpu_probe, backend_factory=BackendRegistry(rife, BlendBackend()))

        stage.run(make_sequence(2), 2, pass_mode=PassMode.MULTI)
        stage.run(make_sequence(2), 4, pass_mode=PassMode.MULTI)

        assert rife.calls[0].pass_mode == PassMode.SINGLE
        assert rife.calls[1].pass_mode == PassMode.MULTI

    def test_single_frame_is_rejected(self, gpu_probe, make_sequence):
        with pytest.raises(InsufficientFramesError) as exc_info:
            InterpolationStage(gpu_probe).run(make_sequence(1), 2)
        assert exc_info.value.required == 2

    def test_factor_one_is_rejected(self, gpu_probe, make_sequence):
        with pytest.raises(InvalidFactorError):
            InterpolationStage(gpu_probe).run(make_sequence(3), 1)

    def test_size_change_mid_sequence(self, cpu_probe, make_sequence):
        sequence = make_sequence(2)
        sequence.append_image(np.zeros((10, 10, 3), dtype=np.uint8))
        with pytest.raises(InconsistentFrameSizesError) as exc_info:
            InterpolationStage(cpu_probe).run(sequence, 2)
        assert exc_info.value.frame_index == 2

    def test_pinned_rife_without_weights(self, model_manager, make_sequence):
        probe = CapabilityProbe(model_manager=model_manager, platform=GPU_PLATFORM)
        with pytest.raises(ModelDownloadRequiredError):
            InterpolationStage(probe).run(make_sequence(2), 2, backend=Pinned(InterpolationBackendKind.RIFE))


class TestInterpolationFallback:

    def test_auto_failure_falls_back_to_blend(self, gpu_probe, make_sequence):
        registry = BackendRegistry(FakeRIFE(fail_at=2), BlendBackend())
        progress_calls = []

        result = InterpolationStage(gpu_probe, backend_factory=registry).run(
            make_sequence(6), 2, backend=AUTO, progress=lambda c, t, m="": progress_calls.append(c / t),
        )

        assert len(result.frames) == 11
        assert result.backend_used == "blend"
        assert result.fell_back
        assert isinstance(result.fallback_reason, ProcessingFailureError)
        assert progress_calls == sorted(progress_calls)
        assert progress_calls[-1] == pytest.approx(1.0)

    def test_pinned_failure_is_fatal(self, gpu_probe, make_sequence):
        registry = BackendRegistry(FakeRIFE(fail_at=0), BlendBackend())
        with pytest.raises(ProcessingFailureError):
            InterpolationStage(gpu_probe, backend_factory=registry).run(
                make_sequence(3), 2, backend=Pinned(InterpolationBackendKind.RIFE),
            )


class TestRIFEBackend:
    """RIFE plumbing with the network replaced by a linear model."""

    def test_setup_requires_weights(self, model_manager):
        with pytest.raises(ModelDownloadRequiredError):
            RIFEBackend(model_manager=model_manager, device="cpu").setup(64, 48)

    def test_process_before_setup(self, model_manager, sample_frame):
        backend = RIFEBackend(model_manager=model_manager, device="cpu")
        with pytest.raises(RuntimeError):
            backend.process(InterpolationParameters(sample_frame, sample_frame, [0.5]))

    def test_matches_blend_for_linear_motion(self, rife_cpu):
        first = np.random.randint(0, 255, (48, 70, 3), dtype=np.uint8)
        second = np.random.randint(0, 255, (48, 70, 3), dtype=np.uint8)
        phases = interpolation_phases(6)

        out = rife_cpu.process(InterpolationParameters(first, second, phases, mode=SubmissionMode.RANDOM))
        expected = BlendBackend().process(InterpolationParameters(first, second, phases))

        assert len(out) == 5
        for got, want in zip(out, expected):
            assert got.shape == first.shape
            assert np.abs(got.astype(int) - want.astype(int)).max() <= 1

    def test_multi_pass_agrees_with_single_pass(self, rife_cpu):
        first = np.random.randint(0, 255, (32, 32, 3), dtype=np.uint8)
        second = np.random.randint(0, 255, (32, 32, 3), dtype=np.uint8)
        phases = interpolation_phases(4)

        single = [d.copy() for d in rife_cpu.process(
            InterpolationParameters(first, second, phases, pass_mode=PassMode.SINGLE, mode=SubmissionMode.RANDOM))]
        multi = rife_cpu.process(
            InterpolationParameters(first, second, phases, pass_mode=PassMode.MULTI, mode=SubmissionMode.RANDOM))

        for a, b in zip(single, multi):
            assert np.abs(a.astype(int) - b.astype(int)).max() <= 1

    def test_sequential_reuses_previous_upload(self, rife_cpu):
        a, b, c = (np.full((32, 32, 3), v, dtype=np.uint8) for v in (0, 100, 200))

        with patch.object(rife_cpu, "_upload", wraps=rife_cpu._upload) as upload:
            rife_cpu.process(InterpolationParameters(a, b, [0.5], mode=SubmissionMode.RANDOM))
            rife_cpu.process(InterpolationParameters(b, c, [0.5], mode=SubmissionMode.SEQUENTIAL))
            assert upload.call_count == 3

            # RANDOM never trusts the cache
            rife_cpu.process(InterpolationParameters(c, a, [0.5], mode=SubmissionMode.RANDOM))
            assert upload.call_count == 5

    def test_batches_are_bounded(self, rife_cpu):
        batch_sizes = []

        def recording_model(first, second, timestep):
            batch_sizes.append(first.shape[0])
            return linear_model(first, second, timestep)

        rife_cpu.model = recording_model
        frame = np.zeros((16, 16, 3), dtype=np.uint8)
        rife_cpu.process(InterpolationParameters(frame, frame, interpolation_phases(8), mode=SubmissionMode.RANDOM))

        assert batch_sizes == [4, 3]

    def test_teardown_releases_model(self, rife_cpu):
        rife_cpu.teardown()
        assert rife_cpu.model is None
        assert rife_cpu.device is None


class TestInterpolateFunction:
    """Module-level interpolate() convenience wrapper."""

    def test_returns_interpolated_frames(self, cpu_probe, make_sequence):
        sequence = make_sequence(3)
        frames = interpolate(sequence, 2, probe=cpu_probe)

        assert len(frames) == 5
        np.testing.assert_array_equal(frames.load(0), sequence.load(0))
        np.testing.assert_array_equal(frames.load(4), sequence.load(2))

    def test_builds_default_probe(self, cpu_probe, make_sequence):
        with patch("framesmith.services.interpolation_stage.CapabilityProbe", return_value=cpu_probe) as probe_cls:
            frames = interpolate(make_sequence(2), 3)
        probe_cls.assert_called_once_with()
        assert len(frames) == 4


class TestLoadIFNet:
    """Weight files are checked against the architecture."""

    def save_weights(self, path, drop=0, extra=False):
        state = {f"module.{key}": value for key, value in IFNet().state_dict().items()}
        for key in list(state)[:drop]:
            del state[key]
        if extra:
            state["module.refine.scale"] = torch.zeros(1)
        # Legacy (non-zip) format, like the published flownet.pkl
        torch.save(state, path, _use_new_zipfile_serialization=False)
        return path

    def test_loads_prefixed_weights_and_ignores_extras(self, tmp_path):
        path = self.save_weights(tmp_path / "flownet.pkl", extra=True)
        model = load_ifnet(path, torch.device("cpu"))
        assert isinstance(model, IFNet)
        assert not model.training

    def test_missing_weights_rejected(self, tmp_path):
        path = self.save_weights(tmp_path / "flownet.pkl", drop=2)
        with pytest.raises(RuntimeError, match="2 missing keys"):
            load_ifnet(path, torch.device("cpu"))

    def test_mismatched_weights_fail_session_setup(self, ready_model_manager):
        self.save_weights(ready_model_manager.artifact_path("rife"), drop=1)
        backend = RIFEBackend(model_manager=ready_model_manager, device="cpu")

        with pytest.raises(ProcessingFailureError) as exc_info:
            with BackendSession(backend, width=64, height=48):
                pass
        assert "missing keys" in str(exc_info.value)
