"""
Video Encoding Module

Streams raw BGR frames into an ffmpeg process (ffmpeg-python ``run_async`` with a
stdin pipe) and produces one QuickTime file.

Lifecycle, each step with its own WriterStage on failure:
1. Construction - ffmpeg binary and output directory exist
2. Input negotiation - encoder compiled into ffmpeg, dimensions valid for the codec
3. Session start - process launched and still alive after a short grace period
4. Append - frames queued and pumped into the pipe by a background thread
5. Finalize - pipe closed, exit status checked, ``*.partial`` renamed over the output

The queue is bounded; callers poll ``ready_for_more_data`` before appending.
"""

import logging
import os
import queue
import shutil
import threading
import time
from pathlib import Path
from typing import List, Optional, Tuple

import ffmpeg
import numpy as np

from framesmith.configuration import VideoCodec, VideoQuality, encoder_arguments, get_settings
from framesmith.constants import (
    CHROMA_SUBSAMPLED_CODECS,
    CONTAINER_FORMAT,
    PARTIAL_SUFFIX,
    PIPE_PIXEL_FORMAT,
    WRITER_QUEUE_DEPTH,
    WRITER_START_GRACE_S,
)
from framesmith.services.assembly_errors import WriterError, WriterStage
from framesmith.services.cancellation import CancellationToken
from framesmith.services.ffmpeg_errors import FFmpegError, available_encoders

logger = logging.getLogger(__name__)

_SENTINEL = None


def partial_path_for(output_path: Path) -> Path:
    """Sibling file the encoder writes into before the final rename."""
    return output_path.with_name(output_path.name + PARTIAL_SUFFIX)


class FrameWriter:
    """
    ffmpeg-backed writer for uniformly sized BGR frames.

    Example:
        writer = FrameWriter(path, 1280, 720, frame_rate=32, codec=VideoCodec.H264)
        writer.start()
        for i, image in enumerate(images):
            while not writer.ready_for_more_data:
                time.sleep(0.005)
            writer.append(image, i)
        writer.finish()
    """

    def __init__(
        self,
        output_path: Path,
        width: int,
        height: int,
        frame_rate: int,
        codec: VideoCodec = VideoCodec.H264,
        quality: VideoQuality = VideoQuality.HIGH,
        cancellation: Optional[CancellationToken] = None,
        ffmpeg_binary: Optional[str] = None,
        queue_depth: int = WRITER_QUEUE_DEPTH,
        start_grace: float = WRITER_START_GRACE_S,
    ):
        self.output_path = Path(output_path)
        self.partial_path = partial_path_for(self.output_path)
        self.width = width
        self.height = height
        self.frame_rate = frame_rate
        self.codec = VideoCodec(codec)
        self.quality = VideoQuality(quality)
        self.cancellation = cancellation
        self.ffmpeg_binary = ffmpeg_binary or get_settings().ffmpeg_binary
        self.start_grace = start_grace

        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_depth)
        self._process = None
        self._pump: Optional[threading.Thread] = None
        self._stderr_reader: Optional[threading.Thread] = None
        self._stderr_lines: List[bytes] = []
        self._error: Optional[WriterError] = None
        self._finished = False
        self.frames_written = 0

        self._check_construction()
        self._encoder_args = self._negotiate_input()

    # ------------------------------------------------------------------
    # Construction / negotiation
    # ------------------------------------------------------------------

    def _check_construction(self) -> None:
        if shutil.which(self.ffmpeg_binary) is None:
            raise WriterError(WriterStage.CONSTRUCTION, f"ffmpeg binary not found: {self.ffmpeg_binary}")
        if not self.output_path.parent.is_dir():
            raise WriterError(
                WriterStage.CONSTRUCTION,
                f"Output directory does not exist: {self.output_path.parent}",
            )

    def _negotiate_input(self) -> dict:
        args = encoder_arguments(self.codec, self.quality)

        if self.width <= 0 or self.height <= 0:
            raise WriterError(WriterStage.INPUT_NEGOTIATION, f"Invalid frame size {self.width}x{self.height}")
        if self.codec.value in CHROMA_SUBSAMPLED_CODECS and (self.width % 2 or self.height % 2):
            raise WriterError(
                WriterStage.INPUT_NEGOTIATION,
                f"{self.codec.value} ({args['pix_fmt']}) needs even dimensions, got {self.width}x{self.height}",
            )

        try:
            encoders = available_encoders(self.ffmpeg_binary)
        except FFmpegError as e:
            raise WriterError(WriterStage.INPUT_NEGOTIATION, f"Could not list ffmpeg encoders: {e}", ffmpeg_error=e)
        if args["vcodec"] not in encoders:
            raise WriterError(
                WriterStage.INPUT_NEGOTIATION,
                f"Encoder {args['vcodec']} for {self.codec.value} is not available in {self.ffmpeg_binary}",
            )
        return args

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def _build_stream(self):
        stream = ffmpeg.input(
            'pipe:',
            format='rawvideo',
            pix_fmt=PIPE_PIXEL_FORMAT,
            s=f'{self.width}x{self.height}',
            framerate=self.frame_rate,
        )
        return ffmpeg.output(stream, str(self.partial_path), f=CONTAINER_FORMAT, **self._encoder_args)

    def compile(self) -> List[str]:
        """Full ffmpeg command line, for logging and tests."""
        return ffmpeg.compile(self._build_stream(), cmd=self.ffmpeg_binary, overwrite_output=True)

    def start(self) -> "FrameWriter":
        """Launch ffmpeg and the pump thread."""
        logger.info(
            f"Starting writer: {self.width}x{self.height} @ {self.frame_rate}fps, "
            f"{self.codec.value}/{self.quality.value} -> {self.output_path.name}"
        )
        logger.debug(f"FFmpeg command: {' '.join(self.compile())}")

        try:
            self._process = ffmpeg.run_async(
                self._build_stream(),
                cmd=self.ffmpeg_binary,
                pipe_stdin=True,
                pipe_stderr=True,
                overwrite_output=True,
            )
        except OSError as e:
            raise WriterError(WriterStage.SESSION_START, f"Failed to launch ffmpeg: {e}")

        self._stderr_reader = threading.Thread(target=self._drain_stderr, name="ffmpeg-stderr", daemon=True)
        self._stderr_reader.start()

        if self.start_grace > 0:
            time.sleep(self.start_grace)
        returncode = self._process.poll()
        if returncode is not None:
            self._join_stderr()
            error = FFmpegError.from_stderr(self.stderr_text, returncode=returncode)
            self._remove_partial()
            raise WriterError(WriterStage.SESSION_START, f"ffmpeg exited immediately: {error}", ffmpeg_error=error)

        if self.cancellation is not None:
            self.cancellation.set_active_process(self._process)

        self._pump = threading.Thread(target=self._pump_frames, name="ffmpeg-pump", daemon=True)
        self._pump.start()
        return self

    def _drain_stderr(self) -> None:
        for line in iter(self._process.stderr.readline, b''):
            self._stderr_lines.append(line)

    def _join_stderr(self) -> None:
        if self._stderr_reader is not None:
            self._stderr_reader.join(timeout=5)

    @property
    def stderr_text(self) -> str:
        return b''.join(self._stderr_lines).decode('utf-8', errors='replace')

    def _pump_frames(self) -> None:
        while True:
            item = self._queue.get()
            if item is _SENTINEL:
                return
            if self._error is not None:
                # Keep draining so producers never block on a dead pipe
                continue
            index, data = item
            try:
                self._process.stdin.write(data)
                self.frames_written += 1
            except (BrokenPipeError, OSError, ValueError) as e:
                logger.error(f"Pipe write failed at frame {index}: {e}")
                self._error = WriterError(
                    WriterStage.APPEND,
                    f"Failed to write frame {index} to ffmpeg: {e}",
                    frame_index=index,
                    ffmpeg_error=FFmpegError.from_stderr(self.stderr_text or str(e)),
                )

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    @property
    def ready_for_more_data(self) -> bool:
        """True when append() will not block (or will raise a pending error)."""
        return self._error is not None or not self._queue.full()

    def append(self, image: np.ndarray, frame_index: int) -> None:
        """
        Queue one frame.

        Raises:
            WriterError: APPEND stage for a wrong-sized frame or an earlier pipe failure
        """
        if self._process is None:
            raise WriterError(WriterStage.APPEND, "Writer not started", frame_index=frame_index)
        if self._error is not None:
            raise self._error
        expected: Tuple[int, int, int] = (self.height, self.width, 3)
        if image.shape != expected:
            raise WriterError(
                WriterStage.APPEND,
                f"Frame {frame_index} has shape {image.shape}, expected {expected}",
                frame_index=frame_index,
            )
        self._queue.put((frame_index, np.ascontiguousarray(image, dtype=np.uint8).tobytes()))

    def finish(self) -> Path:
        """
        Flush, wait for ffmpeg and move the partial file into place.

        Raises:
            WriterError: APPEND if a queued frame failed, FINALIZE on non-zero exit
        """
        if self._process is None:
            raise WriterError(WriterStage.FINALIZE, "Writer not started")

        self._queue.put(_SENTINEL)
        self._pump.join()
        try:
            self._process.stdin.close()
        except (BrokenPipeError, OSError) as e:
            logger.debug(f"Closing ffmpeg stdin: {e}")
        returncode = self._process.wait()
        self._join_stderr()

        if self._error is not None:
            error = self._error
            self.abort()
            raise error

        if returncode != 0:
            ffmpeg_error = FFmpegError.from_stderr(self.stderr_text, returncode=returncode)
            self.abort()
            raise WriterError(
                WriterStage.FINALIZE,
                f"ffmpeg failed to finalize {self.output_path.name}: {ffmpeg_error}",
                ffmpeg_error=ffmpeg_error,
            )

        try:
            os.replace(self.partial_path, self.output_path)
        except OSError as e:
            self.abort()
            raise WriterError(WriterStage.FINALIZE, f"Could not move encoded file into place: {e}")

        self._finished = True
        self._release()
        logger.info(f"✓ Wrote {self.frames_written} frames to {self.output_path}")
        return self.output_path

    def abort(self) -> None:
        """Stop ffmpeg and delete the partial file. Safe to call more than once."""
        if self._finished:
            return
        if self._process is not None and self._process.poll() is None:
            logger.info(f"Killing ffmpeg process {self._process.pid}")
            self._process.kill()
            self._process.wait()
        if self._pump is not None and self._pump.is_alive():
            self._queue.put(_SENTINEL)
            self._pump.join(timeout=5)
        self._remove_partial()
        self._release()

    def _remove_partial(self) -> None:
        if self.partial_path.exists():
            self.partial_path.unlink()
            logger.info(f"Removed partial output {self.partial_path.name}")

    def _release(self) -> None:
        if self.cancellation is not None:
            self.cancellation.set_active_process(None)

    def __enter__(self) -> "FrameWriter":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.abort()
