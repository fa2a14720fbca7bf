"""
Backend Session - Exclusive, single-flight access to one accelerated backend.

A session owns one backend instance and one single-thread executor for the length of
a stage. Every request goes through ``submit()``, which returns a
``concurrent.futures.Future``: a single-shot completion that is fulfilled exactly
once, with either the result or the exception. Stages wait on each future before
submitting the next request, so at most one request is in flight and the backend's
previous-frame chaining is never corrupted by reordering.

USAGE:
    with BackendSession(backend, width=w, height=h, factor=2) as session:
        for i, params in enumerate(requests):
            output = session.run(params, frame_index=i)

Sessions are never pooled or shared across runs; leaving the ``with`` block
(success, failure or cancellation) tears the backend down.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional

from framesmith.services.assembly_errors import AssemblyError, ProcessingFailureError

logger = logging.getLogger(__name__)


class BackendSession:
    """Owned handle around a backend with setup(), process() and teardown()."""

    def __init__(self, backend, **setup_kwargs: Any):
        self.backend = backend
        self._setup_kwargs = setup_kwargs
        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight = threading.Lock()
        self._open = False

    @property
    def name(self) -> str:
        return getattr(self.backend, "name", type(self.backend).__name__)

    def open(self) -> "BackendSession":
        """Start the worker thread and set the backend up on it."""
        if self._open:
            return self
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"session-{self.name}")
        self._open = True
        logger.info(f"Opening backend session: {self.name}")
        try:
            self._executor.submit(self.backend.setup, **self._setup_kwargs).result()
        except AssemblyError:
            self.close()
            raise
        except Exception as e:
            self.close()
            raise ProcessingFailureError(self.name, cause=e) from e
        return self

    def submit(self, params: Any) -> Future:
        """
        Queue one request.

        Raises:
            RuntimeError: If the session is closed or a request is already in flight
        """
        if not self._open or self._executor is None:
            raise RuntimeError(f"Backend session {self.name} is not open")
        if not self._in_flight.acquire(blocking=False):
            raise RuntimeError(f"Backend session {self.name} already has a request in flight")
        return self._executor.submit(self._process, params)

    def _process(self, params: Any) -> Any:
        # Released before the future resolves so the waiter can submit again
        try:
            return self.backend.process(params)
        finally:
            self._in_flight.release()

    def run(self, params: Any, frame_index: Optional[int] = None) -> Any:
        """Submit and wait. Backend exceptions become ProcessingFailureError."""
        future = self.submit(params)
        try:
            return future.result()
        except AssemblyError:
            raise
        except Exception as e:
            raise ProcessingFailureError(self.name, frame_index=frame_index, cause=e) from e

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        executor, self._executor = self._executor, None
        try:
            if executor is not None:
                executor.submit(self.backend.teardown).result()
        except Exception as e:
            # Teardown failures must not mask the stage's own outcome
            logger.warning(f"Backend {self.name} teardown failed: {e}")
        finally:
            if executor is not None:
                executor.shutdown(wait=True)
            logger.info(f"Closed backend session: {self.name}")

    def __enter__(self) -> "BackendSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
