"""
Assembly Pipeline - Orchestrates upscale -> interpolate -> encode.

State machine:
    IDLE -> UPSCALING? -> INTERPOLATING? -> ENCODING -> DONE
    any state -> FAILED

Disabled stages (factor 1 or no request) are skipped and get no progress weight.
The first failing stage aborts the run; its error is re-raised with ``stage`` filled
in, and no output file is left behind (the writer only renames its partial file
into place after a clean finalize).

USAGE:
    pipeline = AssemblyPipeline(progress_callback=lambda p, msg, phase: print(f"{p:.0%} {msg}"))
    result = pipeline.run(frames, configuration)
    print(result.output_path, result.frame_count, float(result.duration))

    future = pipeline.submit(frames, configuration)   # same work on a worker thread
    pipeline.cancel()                                 # raises AssemblyCancelledError in the run
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Callable, Dict, Optional

from framesmith.configuration import PipelineConfiguration, effective_frame_rate
from framesmith.frames import FrameSequence
from framesmith.ai_upscaler.capabilities import CapabilityProbe
from framesmith.ai_upscaler.frame_interpolator import create_interpolation_backend
from framesmith.ai_upscaler.super_resolution import create_upscale_backend
from framesmith.ai_upscaler.video_encoder import FrameWriter
from framesmith.services.assembly_errors import AssemblyError, InsufficientFramesError
from framesmith.services.cancellation import CancellationToken
from framesmith.services.encode_stage import EncodeStage, check_output_path
from framesmith.services.interpolation_stage import InterpolationStage
from framesmith.services.progress_reporter import (
    ProgressCallback,
    ProgressPhase,
    ProgressReporter,
    estimate_stage_weights,
)
from framesmith.services.upscale_stage import UpscaleStage

logger = logging.getLogger(__name__)


class AssemblyState(str, Enum):
    IDLE = "idle"
    UPSCALING = "upscaling"
    INTERPOLATING = "interpolating"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"


StateListener = Callable[[AssemblyState], None]


@dataclass
class AssemblyResult:
    """Outcome of a successful run."""
    output_path: Path
    frame_count: int
    frame_rate: int
    duration: Fraction
    backends: Dict[str, str] = field(default_factory=dict)
    fell_back: bool = False

    @property
    def duration_seconds(self) -> float:
        return float(self.duration)

    def to_dict(self) -> dict:
        return {
            "output_path": str(self.output_path),
            "frame_count": self.frame_count,
            "frame_rate": self.frame_rate,
            "duration": self.duration_seconds,
            "backends": dict(self.backends),
            "fell_back": self.fell_back,
        }


class AssemblyPipeline:
    """
    One pipeline instance drives one run at a time.

    Args:
        probe: Capability probe; a per-run snapshot of it is used for every stage
        upscale_backend_factory: Builds super resolution backends
        interpolation_backend_factory: Builds interpolation backends
        writer_factory: Builds the frame writer
        progress_callback: callback(overall, message, phase_name), may run on worker threads
        state_listener: Called with each AssemblyState transition
    """

    def __init__(
        self,
        probe: Optional[CapabilityProbe] = None,
        upscale_backend_factory: Callable = create_upscale_backend,
        interpolation_backend_factory: Callable = create_interpolation_backend,
        writer_factory: Callable = FrameWriter,
        progress_callback: Optional[ProgressCallback] = None,
        state_listener: Optional[StateListener] = None,
    ):
        self.probe = probe or CapabilityProbe()
        self.upscale_backend_factory = upscale_backend_factory
        self.interpolation_backend_factory = interpolation_backend_factory
        self.writer_factory = writer_factory
        self.progress_callback = progress_callback
        self.state_listener = state_listener

        self._state = AssemblyState.IDLE
        self._token: Optional[CancellationToken] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> AssemblyState:
        return self._state

    def _set_state(self, state: AssemblyState) -> None:
        self._state = state
        logger.debug(f"Assembly state -> {state.value}")
        if self.state_listener:
            self.state_listener(state)

    def run(
        self,
        frames: FrameSequence,
        configuration: PipelineConfiguration,
        cancellation: Optional[CancellationToken] = None,
    ) -> AssemblyResult:
        """
        Run every active stage in order.

        Raises:
            AssemblyError: The first failing stage's error, with ``stage`` set
        """
        with self._lock:
            token = cancellation or CancellationToken()
            self._token = token
        self._set_state(AssemblyState.IDLE)

        stage_name: Optional[str] = None
        reporter = ProgressReporter(self.progress_callback)
        try:
            # Cheap checks first: nothing is processed if the destination is taken
            check_output_path(configuration)
            if frames.is_empty:
                raise InsufficientFramesError(0, 1)

            width, height = frames.first_size()
            upscale_factor = configuration.upscale.factor if configuration.upscale_active else 1
            interpolation_factor = configuration.interpolation.factor if configuration.interpolation_active else 1
            reporter = ProgressReporter(
                self.progress_callback,
                estimate_stage_weights(len(frames), width, height, upscale_factor, interpolation_factor),
            )

            probe = self.probe.snapshot()
            self._log_plan(frames, configuration, width, height)
            start_time = time.time()

            current = frames
            backends: Dict[str, str] = {}
            fell_back = False

            if configuration.upscale_active:
                stage_name = UpscaleStage.name
                self._set_state(AssemblyState.UPSCALING)
                reporter.set_phase(ProgressPhase.UPSCALING, "Upscaling frames")
                result = UpscaleStage(probe, self.upscale_backend_factory).run(
                    current,
                    configuration.upscale.factor,
                    configuration.upscale.backend,
                    reporter.stage_callback(),
                    token,
                )
                current = result.frames
                backends["upscale"] = result.backend_used
                fell_back = fell_back or result.fell_back

            interpolation_applied = False
            if configuration.interpolation_active:
                stage_name = InterpolationStage.name
                self._set_state(AssemblyState.INTERPOLATING)
                reporter.set_phase(ProgressPhase.INTERPOLATION, "Interpolating frames")
                result = InterpolationStage(probe, self.interpolation_backend_factory).run(
                    current,
                    configuration.interpolation.factor,
                    configuration.interpolation.pass_mode,
                    configuration.interpolation.backend,
                    reporter.stage_callback(),
                    token,
                )
                current = result.frames
                backends["interpolation"] = result.backend_used
                fell_back = fell_back or result.fell_back
                interpolation_applied = True

            stage_name = EncodeStage.name
            self._set_state(AssemblyState.ENCODING)
            reporter.set_phase(ProgressPhase.ENCODING, "Encoding video")
            encoded = EncodeStage(self.writer_factory).run(
                current, configuration, interpolation_applied, reporter.stage_callback(), token,
            )
            backends["encode"] = configuration.codec.value

        except Exception as e:
            if isinstance(e, AssemblyError) and e.stage is None:
                e.stage = stage_name
            logger.error(f"Assembly failed{' in ' + stage_name if stage_name else ''}: {e}")
            self._set_state(AssemblyState.FAILED)
            reporter.fail(str(e))
            raise

        self._set_state(AssemblyState.DONE)
        reporter.complete("Video ready")
        elapsed = time.time() - start_time
        logger.info(
            f"✓ Assembly complete: {encoded.frame_count} frames @ {encoded.frame_rate}fps "
            f"({encoded.duration_seconds:.2f}s) in {elapsed:.1f}s -> {encoded.output_path}"
        )
        return AssemblyResult(
            output_path=encoded.output_path,
            frame_count=encoded.frame_count,
            frame_rate=encoded.frame_rate,
            duration=encoded.duration,
            backends=backends,
            fell_back=fell_back,
        )

    def _log_plan(self, frames: FrameSequence, configuration: PipelineConfiguration, width: int, height: int) -> None:
        logger.info("=" * 60)
        logger.info("VIDEO ASSEMBLY")
        logger.info(f"  Frames: {len(frames)} @ {width}x{height}")
        if configuration.upscale_active:
            logger.info(f"  Upscale: x{configuration.upscale.factor} ({_choice_label(configuration.upscale.backend)})")
        if configuration.interpolation_active:
            interp = configuration.interpolation
            logger.info(
                f"  Interpolation: x{interp.factor} {interp.pass_mode.value} ({_choice_label(interp.backend)})"
            )
        rate = effective_frame_rate(configuration, configuration.interpolation_active)
        logger.info(f"  Output: {configuration.codec.value}/{configuration.quality.value} @ {rate}fps")
        logger.info(f"  Path: {configuration.output_path}")
        logger.info("=" * 60)

    def submit(
        self,
        frames: FrameSequence,
        configuration: PipelineConfiguration,
        cancellation: Optional[CancellationToken] = None,
    ) -> Future:
        """Run on a worker thread. The Future resolves once, with the result or the error."""
        with self._lock:
            token = cancellation or CancellationToken()
            self._token = token
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="assembly")
        future = executor.submit(self.run, frames, configuration, token)
        executor.shutdown(wait=False)
        return future

    def cancel(self) -> bool:
        """Signal the current run's cancellation token."""
        with self._lock:
            token = self._token
        if token is None:
            return False
        return token.cancel()


def _choice_label(choice) -> str:
    return choice.kind.value if choice.is_pinned else "auto"
