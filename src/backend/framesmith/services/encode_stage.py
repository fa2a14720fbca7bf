"""
Encode Stage - Writes one QuickTime file with exact per-frame timing.

Checks before any writer exists, in order:
1. Output exists and overwrite is off -> OutputExistsError
2. Sequence is empty -> InsufficientFramesError
3. Any frame's geometry differs from the first -> InconsistentFrameSizesError

Timing is exact: the effective rate is the target rate when interpolation was
applied and the source rate otherwise, PTS(i) = i / rate, duration = count / rate.

Frames are appended only while the writer reports ``ready_for_more_data``;
otherwise the stage sleeps for a short bounded interval and polls again.
"""

import logging
import time
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Callable, Optional, Tuple

from framesmith.configuration import PipelineConfiguration, clip_duration, effective_frame_rate
from framesmith.frames import FrameSequence
from framesmith.ai_upscaler.video_encoder import FrameWriter
from framesmith.constants import WRITER_POLL_INTERVAL_S
from framesmith.services.assembly_errors import (
    AssemblyCancelledError,
    InconsistentFrameSizesError,
    InsufficientFramesError,
    OutputExistsError,
    WriterError,
)
from framesmith.services.cancellation import CancellationToken
from framesmith.services.progress_reporter import StageProgressCallback

logger = logging.getLogger(__name__)


@dataclass
class EncodeResult:
    output_path: Path
    frame_count: int
    frame_rate: int
    duration: Fraction

    @property
    def duration_seconds(self) -> float:
        return float(self.duration)


def check_output_path(configuration: PipelineConfiguration) -> None:
    """Raise OutputExistsError when the destination exists and overwrite is off."""
    if configuration.output_path.exists() and not configuration.overwrite_existing:
        raise OutputExistsError(configuration.output_path)


def validate_geometry(frames: FrameSequence) -> Tuple[int, int]:
    """
    Check every frame has the first frame's size.

    Returns:
        (width, height) shared by all frames
    """
    if frames.is_empty:
        raise InsufficientFramesError(0, 1)
    expected = frames.first_size()
    for i in range(1, len(frames)):
        actual = frames[i].size(i)
        if actual != expected:
            raise InconsistentFrameSizesError(i, expected, actual)
    return expected


class EncodeStage:
    """
    Frame sequence -> video file.

    Args:
        writer_factory: Builds the writer (tests inject a fake)
        poll_interval: Sleep between ready_for_more_data polls, in seconds
    """

    name = "encoding"

    def __init__(
        self,
        writer_factory: Optional[Callable[..., FrameWriter]] = None,
        poll_interval: float = WRITER_POLL_INTERVAL_S,
    ):
        self.writer_factory = writer_factory or FrameWriter
        self.poll_interval = poll_interval

    def run(
        self,
        frames: FrameSequence,
        configuration: PipelineConfiguration,
        interpolation_applied: bool,
        progress: Optional[StageProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> EncodeResult:
        check_output_path(configuration)
        width, height = validate_geometry(frames)

        frame_rate = effective_frame_rate(configuration, interpolation_applied)
        total = len(frames)
        duration = clip_duration(total, frame_rate)
        output_path = configuration.output_path

        logger.info(
            f"[{self.name}] {total} frames {width}x{height} @ {frame_rate}fps "
            f"({float(duration):.2f}s) -> {output_path}"
        )
        start_time = time.time()

        writer = self.writer_factory(
            output_path,
            width,
            height,
            frame_rate,
            codec=configuration.codec,
            quality=configuration.quality,
            cancellation=cancellation,
        )
        writer.start()
        try:
            for i in range(total):
                if cancellation is not None:
                    cancellation.check(self.name)
                image = frames.load(i)
                while not writer.ready_for_more_data:
                    if cancellation is not None:
                        cancellation.check(self.name)
                    time.sleep(self.poll_interval)
                writer.append(image, i)
                if progress:
                    progress(i + 1, total, f"Encoding frame {i + 1}/{total}")
            if cancellation is not None:
                cancellation.check(self.name)
            writer.finish()
        except WriterError as e:
            writer.abort()
            if cancellation is not None and cancellation.is_cancelled:
                # ffmpeg was killed by the cancel request
                raise AssemblyCancelledError(self.name) from e
            raise
        except Exception:
            writer.abort()
            raise

        logger.info(f"[{self.name}] Encoded {total} frames in {time.time() - start_time:.1f}s")
        return EncodeResult(output_path, total, frame_rate, duration)


def encode(
    frames: FrameSequence,
    configuration: PipelineConfiguration,
    interpolation_applied: bool,
    progress: Optional[StageProgressCallback] = None,
    cancellation: Optional[CancellationToken] = None,
    writer_factory: Optional[Callable[..., FrameWriter]] = None,
) -> Path:
    """Encode a sequence and return the output path."""
    stage = EncodeStage(writer_factory)
    return stage.run(frames, configuration, interpolation_applied, progress, cancellation).output_path
