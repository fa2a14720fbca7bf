"""
Progress Reporter - Weighted, monotonic progress across pipeline stages.

Stages report transient (current, total, message) triples for their own work only.
The reporter turns those into one overall fraction in [0, 1] using a weight per
active stage, and never lets the reported value go backwards (a stage re-running
its frames after a fallback, for example, holds the bar rather than rewinding it).

USAGE:
    from framesmith.services.progress_reporter import ProgressReporter, ProgressPhase

    def on_progress(overall, message, phase):
        print(f"{overall:.0%} [{phase}] {message}")

    weights = estimate_stage_weights(frame_count, width, height, upscale_factor=2)
    reporter = ProgressReporter(callback=on_progress, phase_weights=weights)

    reporter.set_phase(ProgressPhase.UPSCALING)
    for i, frame in enumerate(frames):
        upscale(frame)
        reporter.update(i + 1, len(frames), "Upscaling frames")

    reporter.set_phase(ProgressPhase.ENCODING)
    # ... encoding
    reporter.complete()
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from framesmith.constants import STAGE_COST_COEFFICIENTS

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str, str], None]

# Stage-level callback: (current, total, message)
StageProgressCallback = Callable[[int, int, str], None]


class ProgressPhase(Enum):
    """Pipeline progress phases, in execution order."""
    UPSCALING = "upscaling"
    INTERPOLATION = "interpolation"
    ENCODING = "encoding"


@dataclass
class StageProgress:
    """Transient progress emitted by one stage. Only the reporter turns it into overall progress."""
    current: int
    total: int
    message: str = ""

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0
        return max(0.0, min(1.0, self.current / self.total))


def estimate_stage_weights(
    frame_count: int,
    width: int,
    height: int,
    upscale_factor: int = 1,
    interpolation_factor: int = 1,
) -> Dict[ProgressPhase, float]:
    """
    Weight each active stage by its expected cost.

    Cost is the stage's coefficient times the megapixels it produces. A factor of 1
    disables the stage, which then gets no weight. Weights sum to 1.0.
    """
    frame_count = max(frame_count, 1)
    upscaled_mp = (width * upscale_factor) * (height * upscale_factor) / 1_000_000
    output_frames = (frame_count - 1) * interpolation_factor + 1 if interpolation_factor > 1 else frame_count

    costs: Dict[ProgressPhase, float] = {}
    if upscale_factor > 1:
        costs[ProgressPhase.UPSCALING] = STAGE_COST_COEFFICIENTS["upscaling"] * frame_count * upscaled_mp
    if interpolation_factor > 1:
        synthesized = max(output_frames - frame_count, 1)
        costs[ProgressPhase.INTERPOLATION] = STAGE_COST_COEFFICIENTS["interpolation"] * synthesized * upscaled_mp
    costs[ProgressPhase.ENCODING] = STAGE_COST_COEFFICIENTS["encoding"] * output_frames * upscaled_mp

    total = sum(costs.values())
    if total <= 0:
        return {phase: 1.0 / len(costs) for phase in costs}
    return {phase: cost / total for phase, cost in costs.items()}


class ProgressReporter:
    """
    Weighted multi-phase progress reporter.

    Example:
        reporter = ProgressReporter(callback=cb, phase_weights={
            ProgressPhase.UPSCALING: 0.6, ProgressPhase.ENCODING: 0.4})
        reporter.set_phase(ProgressPhase.UPSCALING)
        reporter.update(50, 100, "Upscaling")   # overall 0.30
        reporter.set_phase(ProgressPhase.ENCODING)
        reporter.update(50, 100, "Encoding")    # overall 0.80
    """

    def __init__(
        self,
        callback: Optional[ProgressCallback] = None,
        phase_weights: Optional[Dict[ProgressPhase, float]] = None,
    ):
        """
        Args:
            callback: Optional callback(overall, message, phase_name); may run on worker threads
            phase_weights: Weight per active phase. Phases missing here get no weight.
        """
        self._callback = callback
        self._phase_weights = dict(phase_weights or {ProgressPhase.ENCODING: 1.0})
        self._lock = threading.Lock()

        self._current_phase: Optional[ProgressPhase] = None
        self._phase_start = 0.0
        self._phase_weight = 0.0
        self._completed = 0.0
        self._reported = 0.0
        self._phase_order: List[ProgressPhase] = []

    @property
    def overall(self) -> float:
        return self._reported

    @property
    def current_phase(self) -> Optional[ProgressPhase]:
        return self._current_phase

    def weight(self, phase: ProgressPhase) -> float:
        return self._phase_weights.get(phase, 0.0)

    def set_phase(self, phase: ProgressPhase, message: Optional[str] = None) -> None:
        """Start a new phase; the previous one is counted as complete."""
        with self._lock:
            if self._current_phase is not None and self._current_phase != phase:
                self._completed += self._phase_weight
            self._current_phase = phase
            self._phase_weight = self._phase_weights.get(phase, 0.0)
            self._phase_start = self._completed
            self._phase_order.append(phase)
        if message:
            self._emit(self._phase_start, message)

    def update(self, current: int, total: int, message: str = "") -> None:
        """Report progress within the current phase."""
        fraction = StageProgress(current, total, message).fraction
        self._emit(self._phase_start + self._phase_weight * fraction, message)

    def stage_callback(self) -> StageProgressCallback:
        """Adapter handed to stages: callback(current, total, message)."""
        def callback(current: int, total: int, message: str = "") -> None:
            self.update(current, total, message)
        return callback

    def _emit(self, overall: float, message: str) -> None:
        with self._lock:
            # Never report a smaller value than before
            overall = max(self._reported, min(1.0, overall))
            self._reported = overall
            phase_name = self._current_phase.value if self._current_phase else "initializing"
        if self._callback:
            self._callback(overall, message, phase_name)

    def complete(self, message: str = "Complete") -> None:
        with self._lock:
            self._reported = 1.0
        if self._callback:
            self._callback(1.0, message, "complete")

    def fail(self, message: str = "Failed") -> None:
        """Report failure without moving the progress value."""
        if self._callback:
            self._callback(self._reported, message, "error")


def fallback_progress(
    callback: Optional[StageProgressCallback],
    attempted: int,
    total: int,
) -> Optional[StageProgressCallback]:
    """
    Stage callback for a fallback re-run that keeps progress increasing.

    The first attempt already reported ``attempted`` of ``total``. The re-run's
    (c, T) is mapped so it starts at attempted/total and reaches 1.0 when done.
    """
    if callback is None:
        return None
    remaining = total - attempted

    def rescaled(current: int, sub_total: int, message: str = "") -> None:
        if sub_total <= 0:
            callback(total, total, message)
            return
        callback(attempted * sub_total + current * remaining, total * sub_total, message)

    return rescaled
