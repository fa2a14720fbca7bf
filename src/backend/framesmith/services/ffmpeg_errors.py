"""
FFmpeg Error Handling - Categorized failures for the ffmpeg frame writer.

This module provides:
- FFmpegError: Exception class with categorized error types
- run_ffmpeg(): Helper for short one-shot ffmpeg invocations (encoder discovery)
- available_encoders(): Cached list of encoders compiled into the ffmpeg binary
- Error categorization based on common ffmpeg stderr patterns

The frame writer feeds frames over a pipe, so most failures surface as stderr text
collected after the process exits. ``FFmpegError.from_stderr`` turns that text into
something the pipeline can attach to a WriterError.

USAGE:
    from framesmith.services.ffmpeg_errors import FFmpegError, FFmpegErrorType

    error = FFmpegError.from_stderr(stderr_text, returncode=process.returncode)
    if error.error_type == FFmpegErrorType.DISK_FULL:
        # Not worth retrying until space is freed
"""

import subprocess
import logging
import re
from enum import Enum
from functools import lru_cache
from typing import FrozenSet, List, Optional, Union

logger = logging.getLogger(__name__)


class FFmpegErrorType(Enum):
    """Categorized ffmpeg error types for programmatic handling."""

    # File/path errors
    FILE_NOT_FOUND = "file_not_found"
    PERMISSION_DENIED = "permission_denied"
    DISK_FULL = "disk_full"

    # Input negotiation
    INVALID_DATA = "invalid_data"
    UNSUPPORTED_CODEC = "unsupported_codec"
    INVALID_DIMENSIONS = "invalid_dimensions"

    # Processing errors
    ENCODER_ERROR = "encoder_error"
    PIPE_CLOSED = "pipe_closed"
    OUT_OF_MEMORY = "out_of_memory"

    # General
    UNKNOWN = "unknown"
    COMMAND_NOT_FOUND = "command_not_found"


# Patterns to categorize ffmpeg errors, checked in order
ERROR_PATTERNS = [
    # File errors
    (r"No such file or directory", FFmpegErrorType.FILE_NOT_FOUND),
    (r"Permission denied", FFmpegErrorType.PERMISSION_DENIED),
    (r"No space left on device", FFmpegErrorType.DISK_FULL),
    (r"Disk quota exceeded", FFmpegErrorType.DISK_FULL),

    # Negotiation errors
    (r"Encoder .* not found", FFmpegErrorType.UNSUPPORTED_CODEC),
    (r"Unknown encoder", FFmpegErrorType.UNSUPPORTED_CODEC),
    (r"codec not currently supported in container", FFmpegErrorType.UNSUPPORTED_CODEC),
    (r"Could not find tag for codec", FFmpegErrorType.UNSUPPORTED_CODEC),
    (r"(width|height) not divisible by 2", FFmpegErrorType.INVALID_DIMENSIONS),
    (r"Invalid frame dimensions", FFmpegErrorType.INVALID_DIMENSIONS),
    (r"Invalid data found", FFmpegErrorType.INVALID_DATA),
    (r"Invalid argument", FFmpegErrorType.INVALID_DATA),

    # Processing errors
    (r"Broken pipe", FFmpegErrorType.PIPE_CLOSED),
    (r"Error while encoding", FFmpegErrorType.ENCODER_ERROR),
    (r"Error initializing output", FFmpegErrorType.ENCODER_ERROR),
    (r"Conversion failed", FFmpegErrorType.ENCODER_ERROR),
    (r"Out of memory", FFmpegErrorType.OUT_OF_MEMORY),
    (r"Cannot allocate memory", FFmpegErrorType.OUT_OF_MEMORY),
]


class FFmpegError(Exception):
    """
    Exception for ffmpeg failures.

    Provides structured error information including:
    - error_type: Categorized error type for programmatic handling
    - stderr: Raw stderr output from ffmpeg
    - returncode: Exit code from the ffmpeg process
    - command: The command that failed (optional, for debugging)
    """

    def __init__(
        self,
        message: str,
        error_type: FFmpegErrorType = FFmpegErrorType.UNKNOWN,
        stderr: str = "",
        returncode: int = 1,
        command: Optional[List[str]] = None
    ):
        super().__init__(message)
        self.error_type = error_type
        self.stderr = stderr
        self.returncode = returncode
        self.command = command

    def __str__(self) -> str:
        return f"{self.args[0]} (type={self.error_type.value}, code={self.returncode})"

    @classmethod
    def from_stderr(
        cls,
        stderr: str,
        returncode: int = 1,
        command: Optional[List[str]] = None
    ) -> "FFmpegError":
        """Create an FFmpegError by analyzing stderr output."""
        return cls(
            message=extract_error_message(stderr),
            error_type=categorize_ffmpeg_error(stderr),
            stderr=stderr,
            returncode=returncode,
            command=command
        )


def categorize_ffmpeg_error(stderr: str) -> FFmpegErrorType:
    """
    Analyze ffmpeg stderr and return a categorized error type.

    Args:
        stderr: The stderr output from ffmpeg

    Returns:
        FFmpegErrorType indicating the category of error
    """
    for pattern, error_type in ERROR_PATTERNS:
        if re.search(pattern, stderr, re.IGNORECASE):
            return error_type
    return FFmpegErrorType.UNKNOWN


def extract_error_message(stderr: str) -> str:
    """
    Pick the most relevant line out of ffmpeg's stderr.

    Prefers the last line mentioning an error, then the last non-empty line.
    """
    if not stderr:
        return "FFmpeg command failed"

    lines = [line.strip() for line in stderr.strip().split('\n') if line.strip()]

    for line in reversed(lines):
        line_lower = line.lower()
        if 'error' in line_lower or 'invalid' in line_lower:
            return line

    if lines:
        return lines[-1]

    return "FFmpeg command failed"


def run_ffmpeg(
    cmd: Union[List[str], str],
    timeout: Optional[int] = None,
    check: bool = True
) -> subprocess.CompletedProcess:
    """
    Run a short ffmpeg command with standardized error handling.

    Args:
        cmd: Command as list or string
        timeout: Optional timeout in seconds
        check: Whether to raise FFmpegError on non-zero exit (default True)

    Returns:
        subprocess.CompletedProcess with stdout/stderr as text

    Raises:
        FFmpegError: If the command fails (check=True), is missing, or times out
    """
    if isinstance(cmd, str):
        cmd = cmd.split()

    cmd_list = list(cmd)
    logger.debug(f"Running FFmpeg: {' '.join(cmd_list[:3])}")

    try:
        result = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except FileNotFoundError:
        exe = cmd_list[0] if cmd_list else "ffmpeg"
        raise FFmpegError(
            message=f"{exe} not found. Is FFmpeg installed?",
            error_type=FFmpegErrorType.COMMAND_NOT_FOUND,
            returncode=-1,
            command=cmd_list
        )
    except subprocess.TimeoutExpired as e:
        raise FFmpegError(
            message=f"FFmpeg command timed out after {timeout}s",
            error_type=FFmpegErrorType.UNKNOWN,
            stderr=str(e),
            returncode=-1,
            command=cmd_list
        )

    if check and result.returncode != 0:
        raise FFmpegError.from_stderr(
            stderr=result.stderr,
            returncode=result.returncode,
            command=cmd_list
        )

    return result


# Lines in `ffmpeg -encoders` look like " V....D libx264              libx264 H.264 ..."
_ENCODER_LINE = re.compile(r"^\s*[VAS][\.FXSBD]{5}\s+(\S+)")


@lru_cache(maxsize=8)
def available_encoders(ffmpeg_binary: str = "ffmpeg") -> FrozenSet[str]:
    """
    Return the set of encoder names the ffmpeg binary was built with.

    Cached per binary for the life of the process.

    Raises:
        FFmpegError: If ffmpeg cannot be executed
    """
    result = run_ffmpeg([ffmpeg_binary, '-hide_banner', '-encoders'], timeout=15)
    encoders = set()
    for line in result.stdout.splitlines():
        match = _ENCODER_LINE.match(line)
        # legend rows (" V..... = Video") share the prefix
        if match and match.group(1) != '=':
            encoders.add(match.group(1))
    logger.debug(f"FFmpeg reports {len(encoders)} encoders")
    return frozenset(encoders)
