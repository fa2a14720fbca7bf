"""
Frame Collector - Gathers frames from completed generation jobs and assembles them.

Two ways to use it:
1. Automatic: feed job completions to ``handle_job_completed``; once enough frames
   from one job are collected and auto-assembly is on, a run starts on a worker thread.
2. Manual: add frames directly and call ``assemble_collected`` or ``assemble``.

A job completion with a different job id than the frames already collected starts a
fresh sequence, so frames from unrelated generations are never concatenated.

USAGE:
    collector = FrameCollector(CollectorConfiguration(
        default_configuration=PipelineConfiguration(output_path=Path("out.mov")),
        auto_assemble=True,
        minimum_frames=10,
    ))
    collector.subscribe(lambda event: print(event.type.value, event.job_id))
    collector.handle_job_completed(job)
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from framesmith.configuration import PipelineConfiguration
from framesmith.frames import FrameSequence
from framesmith.services.assembly_pipeline import AssemblyPipeline, AssemblyResult

logger = logging.getLogger(__name__)

ConfigurationProvider = Callable[[str], Optional[PipelineConfiguration]]


class CollectorEventType(str, Enum):
    FRAMES_COLLECTED = "frames_collected"
    ASSEMBLY_STARTED = "assembly_started"
    ASSEMBLY_PROGRESS = "assembly_progress"
    ASSEMBLY_COMPLETED = "assembly_completed"
    ASSEMBLY_FAILED = "assembly_failed"


@dataclass
class CollectorEvent:
    type: CollectorEventType
    job_id: str
    count: Optional[int] = None
    progress: Optional[float] = None
    output_path: Optional[Path] = None
    error: Optional[BaseException] = None


CollectorListener = Callable[[CollectorEvent], None]


@dataclass
class JobCompletion:
    """What the job system reports when a generation job finishes."""
    job_id: str
    images: List[np.ndarray] = field(default_factory=list)
    paths: List[Path] = field(default_factory=list)
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    model: Optional[str] = None
    seed: Optional[int] = None
    completed_at: Optional[datetime] = None
    frame_count: int = 1

    @property
    def is_video_job(self) -> bool:
        return self.frame_count > 1


@dataclass
class CollectorConfiguration:
    """
    Args:
        default_configuration: Used when no provider is set or the provider returns None
        auto_assemble: Start a run automatically once minimum_frames are collected
        minimum_frames: Frame count that triggers auto-assembly
        collect_all_completed_jobs: Collect single-image jobs too, not only video jobs
        clear_frames_after_assembly: Drop collected frames after a successful auto-assembly
        configuration_provider: Per-job configuration (e.g. an output path named after the job)
    """
    default_configuration: PipelineConfiguration
    auto_assemble: bool = False
    minimum_frames: int = 2
    collect_all_completed_jobs: bool = False
    clear_frames_after_assembly: bool = True
    configuration_provider: Optional[ConfigurationProvider] = None


class FrameCollector:
    """Collects job frames and drives assembly runs."""

    def __init__(
        self,
        configuration: CollectorConfiguration,
        pipeline_factory: Callable[..., AssemblyPipeline] = AssemblyPipeline,
    ):
        self.configuration = configuration
        self.pipeline_factory = pipeline_factory

        self._frames = FrameSequence()
        self._listeners: List[CollectorListener] = []
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="collector")
        self._pipeline: Optional[AssemblyPipeline] = None

        self.is_assembling = False
        self.assembly_progress = 0.0
        self.last_error: Optional[BaseException] = None
        self.current_job_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: CollectorListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _emit(self, event: CollectorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Collector listener failed on {event.type.value}: {e}")

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    @property
    def collected_frames(self) -> FrameSequence:
        with self._lock:
            return self._frames.copy()

    def update_configuration(self, configuration: CollectorConfiguration) -> None:
        self.configuration = configuration

    def handle_job_completed(self, job: JobCompletion) -> Optional[Future]:
        """Entry point for job-completion notifications."""
        if not (self.configuration.collect_all_completed_jobs or job.is_video_job):
            logger.debug(f"Ignoring job {job.job_id}: not a video job")
            return None
        return self.add_job_frames(job)

    def add_job_frames(self, job: JobCompletion) -> Optional[Future]:
        """
        Add a job's frames, starting over if the job id changed.

        Returns:
            Future of the auto-assembly run if one was started
        """
        if not job.images and not job.paths:
            return None

        with self._lock:
            existing = self._frames.metadata.source_job_id
            if existing is not None and existing != job.job_id:
                logger.info(f"New job {job.job_id} (was {existing}), clearing {len(self._frames)} collected frames")
                self._frames.clear()

            metadata = self._frames.metadata
            if metadata.source_job_id is None:
                metadata.source_job_id = job.job_id
            metadata.prompt = job.prompt
            metadata.negative_prompt = job.negative_prompt
            if job.model is not None:
                metadata.model = job.model
            if job.seed is not None:
                metadata.seed = job.seed
            metadata.generated_at = job.completed_at or datetime.now()

            for image in job.images:
                self._frames.append_image(image)
            for path in job.paths:
                self._frames.append_path(path)
            count = len(job.images) + len(job.paths)
            total = len(self._frames)

            start_auto = (
                self.configuration.auto_assemble
                and total >= self.configuration.minimum_frames
                and not self.is_assembling
            )
            if start_auto:
                self.is_assembling = True

        logger.info(f"Collected {count} frames from job {job.job_id} ({total} total)")
        self._emit(CollectorEvent(CollectorEventType.FRAMES_COLLECTED, job.job_id, count=count))

        if start_auto:
            return self._executor.submit(self._auto_assemble, job.job_id)
        return None

    def add_frames(self, paths: Sequence[Union[str, Path]]) -> None:
        with self._lock:
            for path in paths:
                self._frames.append_path(path)

    def add_sequence(self, sequence: FrameSequence) -> None:
        with self._lock:
            self._frames.extend(sequence)

    def clear_frames(self) -> None:
        with self._lock:
            self._frames.clear()

    def remove_frames(self, indices: Sequence[int]) -> None:
        with self._lock:
            self._frames.remove(indices)

    def replace_frames(self, sequence: FrameSequence) -> None:
        with self._lock:
            self._frames = sequence.copy()

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def _configuration_for(self, job_id: str) -> PipelineConfiguration:
        provider = self.configuration.configuration_provider
        if provider is not None:
            configuration = provider(job_id)
            if configuration is not None:
                return configuration
        return self.configuration.default_configuration

    def _auto_assemble(self, job_id: str) -> Optional[AssemblyResult]:
        try:
            frames = self.collected_frames
            configuration = self._configuration_for(job_id)
        except Exception as e:
            logger.error(f"Auto-assembly for job {job_id} could not start: {e}")
            self._record_failure(job_id, e)
            return None
        try:
            result = self.assemble(frames, configuration)
        except Exception as e:
            # Already reported through ASSEMBLY_FAILED and last_error
            logger.warning(f"Auto-assembly for job {job_id} failed: {e}")
            return None
        if self.configuration.clear_frames_after_assembly:
            self.clear_frames()
        return result

    def _record_failure(self, job_id: str, error: BaseException) -> None:
        with self._lock:
            self.is_assembling = False
            self.last_error = error
            self.current_job_id = None
            self._pipeline = None
        self._emit(CollectorEvent(CollectorEventType.ASSEMBLY_FAILED, job_id, error=error))

    def assemble_collected(self, configuration: Optional[PipelineConfiguration] = None) -> AssemblyResult:
        """Assemble the collected frames with configuration or the default one."""
        return self.assemble(self.collected_frames, configuration or self.configuration.default_configuration)

    def assemble(self, frames: FrameSequence, configuration: PipelineConfiguration) -> AssemblyResult:
        """
        Run the pipeline on frames, publishing events along the way.

        Raises:
            AssemblyError: Whatever the pipeline raised (also sent as ASSEMBLY_FAILED)
        """
        job_id = frames.metadata.source_job_id or uuid.uuid4().hex
        with self._lock:
            self.is_assembling = True
            self.assembly_progress = 0.0
            self.last_error = None
            self.current_job_id = job_id

        def on_progress(overall: float, message: str, phase: str) -> None:
            self.assembly_progress = overall
            self._emit(CollectorEvent(CollectorEventType.ASSEMBLY_PROGRESS, job_id, progress=overall))

        self._emit(CollectorEvent(CollectorEventType.ASSEMBLY_STARTED, job_id))
        try:
            pipeline = self.pipeline_factory(progress_callback=on_progress)
            self._pipeline = pipeline
            result = pipeline.run(frames, configuration)
        except Exception as e:
            self._record_failure(job_id, e)
            raise

        with self._lock:
            self.is_assembling = False
            self.assembly_progress = 1.0
            self.current_job_id = None
            self._pipeline = None
        self._emit(CollectorEvent(CollectorEventType.ASSEMBLY_COMPLETED, job_id, output_path=result.output_path))
        return result

    def cancel(self) -> bool:
        """Cancel the running assembly, if any."""
        pipeline = self._pipeline
        return pipeline.cancel() if pipeline is not None else False

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
