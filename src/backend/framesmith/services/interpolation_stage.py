"""
Interpolation Stage - N frames in, (N - 1) * factor + 1 frames out.

For each adjacent pair the stage emits the first original, then factor - 1 synthesized
frames at phases k / factor, and after the last pair the final original once. Both
endpoints are the input frames themselves.

RIFE gets one submission per pair (both originals, the phase list and pre-allocated
destination buffers). Blend is always available and is the fallback for an
auto-selected RIFE that fails mid-run; the fallback re-runs every pair.
"""

import logging
import time
from typing import Callable, List, Optional

import numpy as np

from framesmith.configuration import AUTO, BackendChoice, InterpolationBackendKind, PassMode, SubmissionMode
from framesmith.frames import Frame, FrameSequence
from framesmith.ai_upscaler.capabilities import CapabilityProbe
from framesmith.ai_upscaler.frame_interpolator import (
    InterpolationParameters,
    create_interpolation_backend,
    interpolation_phases,
)
from framesmith.services.assembly_errors import (
    AssemblyError,
    InconsistentFrameSizesError,
    InsufficientFramesError,
    InvalidFactorError,
)
from framesmith.services.backend_selection import log_fallback, select_backend, should_fall_back
from framesmith.services.backend_session import BackendSession
from framesmith.services.cancellation import CancellationToken
from framesmith.services.progress_reporter import StageProgressCallback, fallback_progress
from framesmith.services.upscale_stage import StageResult

logger = logging.getLogger(__name__)

INTERPOLATION_PRIORITY = (
    InterpolationBackendKind.RIFE,
    InterpolationBackendKind.BLEND,
)


def interpolated_length(frame_count: int, factor: int) -> int:
    if frame_count < 2 or factor <= 1:
        return frame_count
    return (frame_count - 1) * factor + 1


class InterpolationStage:
    """Frame interpolation over a whole sequence."""

    name = "interpolation"

    def __init__(
        self,
        probe: Optional[CapabilityProbe] = None,
        backend_factory: Callable = create_interpolation_backend,
    ):
        self.probe = probe or CapabilityProbe()
        self.backend_factory = backend_factory

    def run(
        self,
        frames: FrameSequence,
        factor: int,
        pass_mode: PassMode = PassMode.SINGLE,
        backend: BackendChoice = AUTO,
        progress: Optional[StageProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> StageResult:
        if len(frames) < 2:
            raise InsufficientFramesError(len(frames), 2)
        if factor <= 1:
            raise InvalidFactorError(factor)

        # MULTI only changes anything when there is more than one phase
        effective_pass = pass_mode if factor > 2 else PassMode.SINGLE

        first = frames.load(0)
        height, width = first.shape[:2]
        kind = select_backend(self.probe, backend, INTERPOLATION_PRIORITY, width, height, stage=self.name)

        start_time = time.time()
        outputs: List[Frame] = []
        pairs_done = [0]
        try:
            self._process(kind, frames, first, factor, effective_pass, outputs, pairs_done, progress, cancellation)
            fell_back, reason = False, None
        except AssemblyError as e:
            if not should_fall_back(backend, kind, e):
                raise
            log_fallback(self.name, kind, InterpolationBackendKind.BLEND, e)
            attempted = pairs_done[0]
            outputs = []
            pairs_done = [0]
            self._process(
                InterpolationBackendKind.BLEND, frames, first, factor, effective_pass, outputs, pairs_done,
                fallback_progress(progress, attempted, len(frames) - 1), cancellation,
            )
            kind, fell_back, reason = InterpolationBackendKind.BLEND, True, e

        elapsed = time.time() - start_time
        logger.info(
            f"[{self.name}] {len(frames)} -> {len(outputs)} frames (x{factor}, {effective_pass.value}) "
            f"with {kind.value} in {elapsed:.1f}s{' (fallback)' if fell_back else ''}"
        )
        return StageResult(frames.derive(outputs), kind.value, fell_back, reason)

    def _process(
        self,
        kind: InterpolationBackendKind,
        frames: FrameSequence,
        first: np.ndarray,
        factor: int,
        pass_mode: PassMode,
        outputs: List[Frame],
        pairs_done: List[int],
        progress: Optional[StageProgressCallback],
        cancellation: Optional[CancellationToken],
    ) -> None:
        pair_count = len(frames) - 1
        phases = interpolation_phases(factor)
        height, width = first.shape[:2]
        backend = self.backend_factory(kind, model_manager=self.probe.model_manager)

        with BackendSession(backend, width=width, height=height) as session:
            current = first
            for i in range(pair_count):
                if cancellation is not None:
                    cancellation.check(self.name)

                following = frames.load(i + 1)
                if following.shape != current.shape:
                    raise InconsistentFrameSizesError(
                        i + 1,
                        (current.shape[1], current.shape[0]),
                        (following.shape[1], following.shape[0]),
                    )

                params = InterpolationParameters(
                    first=current,
                    second=following,
                    phases=phases,
                    destinations=[np.empty_like(current) for _ in phases],
                    pass_mode=pass_mode,
                    mode=SubmissionMode.RANDOM if i == 0 else SubmissionMode.SEQUENTIAL,
                )
                synthesized = session.run(params, frame_index=i)

                outputs.append(frames[i])
                outputs.extend(Frame.from_image(image) for image in synthesized)
                current = following
                pairs_done[0] = i + 1

                logger.debug(f"[{self.name}] pair {i + 1}/{pair_count} done ({kind.value})")
                if progress:
                    progress(i + 1, pair_count, f"Interpolating pair {i + 1}/{pair_count}")

            outputs.append(frames[pair_count])


def interpolate(
    frames: FrameSequence,
    factor: int,
    pass_mode: PassMode = PassMode.SINGLE,
    backend: BackendChoice = AUTO,
    progress: Optional[StageProgressCallback] = None,
    cancellation: Optional[CancellationToken] = None,
    probe: Optional[CapabilityProbe] = None,
) -> FrameSequence:
    """Interpolate a sequence and return only the frames."""
    return InterpolationStage(probe).run(frames, factor, pass_mode, backend, progress, cancellation).frames
