"""
Upscale Stage - N frames in, N frames out at an integer scale factor.

Backend priority for Auto: Real-ESRGAN temporal -> Real-ESRGAN compact -> Lanczos.
Accelerated backends run inside a BackendSession and receive the previous source and
output frame for temporal stabilization. The first frame is submitted in RANDOM mode,
every later one in SEQUENTIAL mode.

If the backend fails mid-run, the whole sequence is re-run through Lanczos so the
output is uniform; progress keeps increasing during the re-run. This applies to
pinned backends too. A pinned backend that cannot be selected at all (missing
weights, input too large, no accelerator) is still an error.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from framesmith.configuration import AUTO, BackendChoice, SubmissionMode, UpscaleBackendKind
from framesmith.frames import Frame, FrameSequence
from framesmith.ai_upscaler.capabilities import CapabilityProbe
from framesmith.ai_upscaler.super_resolution import UpscaleParameters, create_upscale_backend
from framesmith.ai_upscaler.utils import scaled_size
from framesmith.services.assembly_errors import (
    AssemblyError,
    InsufficientFramesError,
    InvalidFactorError,
    ProcessingFailureError,
)
from framesmith.services.backend_selection import log_fallback, select_backend, should_fall_back
from framesmith.services.backend_session import BackendSession
from framesmith.services.cancellation import CancellationToken
from framesmith.services.progress_reporter import StageProgressCallback, fallback_progress

logger = logging.getLogger(__name__)

UPSCALE_PRIORITY = (
    UpscaleBackendKind.REALESRGAN_TEMPORAL,
    UpscaleBackendKind.REALESRGAN_COMPACT,
    UpscaleBackendKind.LANCZOS,
)


@dataclass
class StageResult:
    """Frames produced by a stage plus which backend actually produced them."""
    frames: FrameSequence
    backend_used: str
    fell_back: bool = False
    fallback_reason: Optional[AssemblyError] = None


class UpscaleStage:
    """
    Super resolution over a whole sequence.

    Args:
        probe: Capability probe used for backend selection
        backend_factory: Builds a backend for a kind (tests inject fakes here)
    """

    name = "upscaling"

    def __init__(
        self,
        probe: Optional[CapabilityProbe] = None,
        backend_factory: Callable = create_upscale_backend,
    ):
        self.probe = probe or CapabilityProbe()
        self.backend_factory = backend_factory

    def run(
        self,
        frames: FrameSequence,
        factor: int,
        backend: BackendChoice = AUTO,
        progress: Optional[StageProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> StageResult:
        if factor <= 1:
            raise InvalidFactorError(factor)
        if frames.is_empty:
            raise InsufficientFramesError(0, 1)

        first = frames.load(0)
        height, width = first.shape[:2]
        kind = select_backend(
            self.probe, backend, UPSCALE_PRIORITY, width, height, factor, stage=self.name
        )

        start_time = time.time()
        outputs: List[Frame] = []
        try:
            self._process(kind, frames, first, factor, outputs, progress, cancellation)
            fell_back, reason = False, None
        except AssemblyError as e:
            if not should_fall_back(backend, kind, e, degrade_pinned=True):
                raise
            log_fallback(self.name, kind, UpscaleBackendKind.LANCZOS, e)
            attempted = len(outputs)
            outputs = []
            self._process(
                UpscaleBackendKind.LANCZOS, frames, first, factor, outputs,
                fallback_progress(progress, attempted, len(frames)), cancellation,
            )
            kind, fell_back, reason = UpscaleBackendKind.LANCZOS, True, e

        elapsed = time.time() - start_time
        logger.info(
            f"[{self.name}] {len(outputs)} frames x{factor} with {kind.value} in {elapsed:.1f}s"
            f"{' (fallback)' if fell_back else ''}"
        )
        return StageResult(frames.derive(outputs), kind.value, fell_back, reason)

    def _process(
        self,
        kind: UpscaleBackendKind,
        frames: FrameSequence,
        first,
        factor: int,
        outputs: List[Frame],
        progress: Optional[StageProgressCallback],
        cancellation: Optional[CancellationToken],
    ) -> None:
        """Upscale every frame with one backend, appending to outputs as it goes."""
        total = len(frames)
        height, width = first.shape[:2]
        backend = self.backend_factory(kind, model_manager=self.probe.model_manager)

        with BackendSession(backend, width=width, height=height, factor=factor) as session:
            previous_source = None
            previous_output = None
            for i in range(total):
                if cancellation is not None:
                    cancellation.check(self.name)

                source = first if i == 0 else frames.load(i)
                mode = SubmissionMode.RANDOM if i == 0 else SubmissionMode.SEQUENTIAL
                params = UpscaleParameters(source, factor, mode, previous_source, previous_output)
                output = session.run(params, frame_index=i)

                src_height, src_width = source.shape[:2]
                expected = scaled_size(src_width, src_height, factor)
                if (output.shape[1], output.shape[0]) != expected:
                    raise ProcessingFailureError(
                        kind.value, i,
                        ValueError(f"returned {output.shape[1]}x{output.shape[0]}, expected {expected[0]}x{expected[1]}"),
                    )

                outputs.append(Frame.from_image(output))
                previous_source, previous_output = source, output
                logger.debug(f"[{self.name}] frame {i + 1}/{total} done ({kind.value})")
                if progress:
                    progress(i + 1, total, f"Upscaling frame {i + 1}/{total}")


def upscale(
    frames: FrameSequence,
    factor: int,
    backend: BackendChoice = AUTO,
    progress: Optional[StageProgressCallback] = None,
    cancellation: Optional[CancellationToken] = None,
    probe: Optional[CapabilityProbe] = None,
) -> FrameSequence:
    """Upscale a sequence and return only the frames."""
    return UpscaleStage(probe).run(frames, factor, backend, progress, cancellation).frames
