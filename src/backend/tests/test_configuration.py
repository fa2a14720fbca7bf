"""
Tests for pipeline configuration values and timing helpers.
"""

import pytest
from fractions import Fraction
from pathlib import Path

from framesmith.configuration import (
    AUTO,
    Auto,
    InterpolationBackendKind,
    InterpolationRequest,
    PassMode,
    Pinned,
    PipelineConfiguration,
    Settings,
    UpscaleBackendKind,
    UpscaleRequest,
    VideoCodec,
    VideoQuality,
    clip_duration,
    effective_frame_rate,
    encoder_arguments,
    frame_duration,
    parse_backend_choice,
    presentation_timestamp,
)
from framesmith.services.assembly_errors import AssemblyErrorType, InvalidConfigurationError


class TestBackendChoice:
    """Tests for the Auto | Pinned tagged choice."""

    def test_auto_is_not_pinned(self):
        assert not AUTO.is_pinned
        assert Auto() == AUTO

    def test_pinned_carries_kind(self):
        choice = Pinned(UpscaleBackendKind.LANCZOS)
        assert choice.is_pinned
        assert choice.kind == UpscaleBackendKind.LANCZOS

    def test_parse_auto_and_none(self):
        assert parse_backend_choice("auto", UpscaleBackendKind) == AUTO
        assert parse_backend_choice(None, UpscaleBackendKind) == AUTO

    def test_parse_pinned(self):
        assert parse_backend_choice("rife", InterpolationBackendKind) == Pinned(InterpolationBackendKind.RIFE)

    def test_parse_unknown_raises_invalid_input(self):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            parse_backend_choice("waifu2x", UpscaleBackendKind)
        assert exc_info.value.error_type == AssemblyErrorType.INVALID_INPUT
        assert exc_info.value.field == "backend"


class TestRequests:
    """Tests for stage requests and factor validation."""

    def test_factor_one_is_inactive(self):
        assert not UpscaleRequest(factor=1).is_active
        assert not InterpolationRequest(factor=1).is_active

    def test_factor_two_is_active(self):
        assert UpscaleRequest(factor=2).is_active
        assert InterpolationRequest(factor=4, pass_mode=PassMode.MULTI).is_active

    @pytest.mark.parametrize("factor", [0, -2])
    def test_non_positive_factor_is_invalid(self, factor):
        with pytest.raises(InvalidConfigurationError):
            UpscaleRequest(factor=factor)
        with pytest.raises(InvalidConfigurationError):
            InterpolationRequest(factor=factor)

    @pytest.mark.parametrize("factor", [True, 2.0, "2"])
    def test_non_integer_factor_is_invalid(self, factor):
        with pytest.raises(InvalidConfigurationError):
            UpscaleRequest(factor=factor)
        with pytest.raises(InvalidConfigurationError):
            InterpolationRequest(factor=factor)


class TestPipelineConfiguration:
    """Tests for PipelineConfiguration."""

    def test_defaults(self, tmp_path):
        config = PipelineConfiguration(output_path=str(tmp_path / "out.mov"))
        assert isinstance(config.output_path, Path)
        assert config.source_frame_rate == 16
        assert config.target_frame_rate == 16
        assert config.codec == VideoCodec.H264
        assert config.quality == VideoQuality.HIGH
        assert config.overwrite_existing is True
        assert not config.upscale_active
        assert not config.interpolation_active

    def test_is_immutable(self, tmp_path):
        config = PipelineConfiguration(output_path=tmp_path / "out.mov")
        with pytest.raises(Exception):
            config.codec = VideoCodec.HEVC

    @pytest.mark.parametrize("field", ["source_frame_rate", "target_frame_rate"])
    def test_frame_rates_must_be_positive(self, tmp_path, field):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            PipelineConfiguration(output_path=tmp_path / "out.mov", **{field: 0})
        assert exc_info.value.field == field

    def test_boolean_frame_rate_is_invalid(self, tmp_path):
        with pytest.raises(InvalidConfigurationError):
            PipelineConfiguration(output_path=tmp_path / "out.mov", target_frame_rate=True)

    def test_with_overrides_returns_new_configuration(self, tmp_path):
        config = PipelineConfiguration(output_path=tmp_path / "out.mov")
        changed = config.with_overrides(codec=VideoCodec.PRORES_422, upscale=UpscaleRequest(factor=2))
        assert changed is not config
        assert changed.codec == VideoCodec.PRORES_422
        assert changed.upscale_active
        assert config.codec == VideoCodec.H264


class TestTiming:
    """Exact frame timing."""

    def test_effective_rate_uses_target_only_with_interpolation(self, tmp_path):
        config = PipelineConfiguration(output_path=tmp_path / "o.mov", source_frame_rate=16, target_frame_rate=32)
        assert effective_frame_rate(config, interpolation_applied=True) == 32
        assert effective_frame_rate(config, interpolation_applied=False) == 16

    def test_frame_duration_and_pts_are_exact(self):
        assert frame_duration(24) == Fraction(1, 24)
        assert presentation_timestamp(3, 24) == Fraction(1, 8)

    def test_81_frames_doubled_to_32fps(self):
        # 81 source frames, factor 2 -> 161 frames
        assert clip_duration(161, 32) == Fraction(161, 32)
        assert float(clip_duration(161, 32)) == pytest.approx(5.03, abs=0.01)

    def test_81_frames_doubled_to_24fps(self):
        assert float(clip_duration(161, 24)) == pytest.approx(6.71, abs=0.01)


class TestEncoderArguments:
    """Codec/quality -> ffmpeg arguments."""

    def test_h264_uses_crf(self):
        args = encoder_arguments(VideoCodec.H264, VideoQuality.HIGH)
        assert args["vcodec"] == "libx264"
        assert args["pix_fmt"] == "yuv420p"
        assert args["crf"] == 18

    def test_hevc_is_tagged_hvc1(self):
        args = encoder_arguments(VideoCodec.HEVC, VideoQuality.MEDIUM)
        assert args["vcodec"] == "libx265"
        assert args["tag:v"] == "hvc1"

    def test_prores_uses_qscale(self):
        args = encoder_arguments("prores4444", "maximum")
        assert args["vcodec"] == "prores_ks"
        assert args["profile:v"] == "4"
        assert args["pix_fmt"] == "yuva444p10le"
        assert "crf" not in args
        assert args["qscale:v"] == 2

    def test_lower_quality_means_higher_crf(self):
        low = encoder_arguments(VideoCodec.H264, VideoQuality.LOW)["crf"]
        maximum = encoder_arguments(VideoCodec.H264, VideoQuality.MAXIMUM)["crf"]
        assert low > maximum


class TestSettings:
    """Environment-driven settings."""

    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FRAMESMITH_WEIGHTS_DIR", str(tmp_path))
        monkeypatch.setenv("FRAMESMITH_FORCE_HEADLESS", "1")
        monkeypatch.setenv("FRAMESMITH_DEVICE", "cpu")
        monkeypatch.setenv("ENV", "production")
        settings = Settings()
        assert settings.weights_dir == tmp_path
        assert settings.force_headless is True
        assert settings.device == "cpu"
        assert not settings.is_dev

    def test_defaults(self, monkeypatch):
        for name in ("FRAMESMITH_WEIGHTS_DIR", "FRAMESMITH_FFMPEG", "FRAMESMITH_FORCE_HEADLESS",
                     "FRAMESMITH_DEVICE", "ENV"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings()
        assert settings.ffmpeg_binary == "ffmpeg"
        assert settings.force_headless is False
        assert settings.device is None
        assert settings.is_dev
