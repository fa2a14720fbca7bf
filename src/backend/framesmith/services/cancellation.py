"""
Cancellation token for assembly runs.

Stages call ``check()`` between frame-level units of work. A cancel request also
terminates the ffmpeg process registered by the writer so a blocked pipe write
returns promptly.
"""

import logging
import subprocess
import threading
from typing import Optional

from framesmith.services.assembly_errors import AssemblyCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe, one-way cancel flag for a single run."""

    def __init__(self):
        self._cancel_event = threading.Event()
        self._active_process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def cancel(self) -> bool:
        """
        Request cancellation.

        Returns:
            True if this call initiated the cancellation, False if already cancelled
        """
        if self._cancel_event.is_set():
            logger.debug("Cancellation already in progress")
            return False

        logger.warning("Assembly cancellation requested")
        self._cancel_event.set()
        with self._lock:
            if self._active_process is not None and self._active_process.poll() is None:
                logger.info(f"Terminating active ffmpeg process: {self._active_process.pid}")
                self._active_process.terminate()
        return True

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def check(self, context: str = "") -> None:
        """Raise AssemblyCancelledError if cancellation was requested."""
        if self._cancel_event.is_set():
            logger.info(f"Cancellation observed{' in ' + context if context else ''}")
            raise AssemblyCancelledError(context)

    def set_active_process(self, process: Optional[subprocess.Popen]) -> None:
        with self._lock:
            self._active_process = process
