"""
FFmpeg Runner with Timeout Enforcement

Runs one FFmpeg command per call with:
- Strict wall-clock timeout enforcement
- Process group management for clean termination (SIGKILL, no grace period)
- Full stderr capture for post-mortem diagnosis
- Output artifact verification

run_ffmpeg never raises: spawn errors, timeouts, non-zero exits and missing
output files are all folded into an FFmpegResult, so callers have a single
success/failure branch.

This is the primary protection against runaway FFmpeg processes.
"""

import logging
import os
import re
import signal
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

# Known FFmpeg diagnostics, first match wins. Best effort only: the stderr
# format is not a stable interface and only affects the error message.
ERROR_PATTERNS = [
    re.compile(r"Error.*$", re.MULTILINE),
    re.compile(r"Invalid.*$", re.MULTILINE),
    re.compile(r"No such file or directory", re.MULTILINE),
    re.compile(r"Permission denied", re.MULTILINE),
]

# Lines of stderr returned when no pattern matches
STDERR_TAIL_LINES = 3


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    EXIT_CODE = "exit_code"
    MISSING_OUTPUT = "missing_output"
    SPAWN = "spawn"


@dataclass(frozen=True)
class FFmpegCommand:
    """Complete argument vector (binary first) and the file it must produce."""

    args: List[str]
    output_path: str

    def __str__(self) -> str:
        return " ".join(self.args)


@dataclass
class FFmpegResult:
    success: bool
    output_path: str
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    failure: Optional[FailureKind] = None
    return_code: Optional[int] = None
    stderr: str = field(default="", repr=False)

    @property
    def timed_out(self) -> bool:
        return self.failure == FailureKind.TIMEOUT


def run_ffmpeg(command: FFmpegCommand, timeout_seconds: float = 300) -> FFmpegResult:
    """
    Run an FFmpeg command with timeout enforcement.

    This function:
    1. Starts FFmpeg in its own process group
    2. Buffers stderr in full (FFmpeg reports diagnostics there)
    3. On timeout, SIGKILLs the whole process group and reaps the child
    4. On exit 0, verifies the declared output file exists
    5. On non-zero exit, extracts a readable message from stderr

    Args:
        command: Command to run; args[0] is the executable
        timeout_seconds: Maximum allowed runtime in seconds

    Returns:
        FFmpegResult: success with duration_ms, or failure with error and kind

    Example:
        result = run_ffmpeg(
            FFmpegCommand(["ffmpeg", "-y", "-i", "in.png", "out.mp4"], "out.mp4"),
            timeout_seconds=300,
        )
        if not result.success:
            print(result.error)
    """
    logger.info(f"Starting FFmpeg with timeout={timeout_seconds}s")
    logger.debug(f"FFmpeg command: {command}")

    start_time = time.monotonic()

    try:
        # preexec_fn=os.setsid creates a new session/process group so the
        # timeout kill also reaches anything FFmpeg spawned
        process = subprocess.Popen(
            command.args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            universal_newlines=True,
            errors="replace",
            preexec_fn=os.setsid,
        )
    except OSError as e:
        logger.error(f"Failed to spawn FFmpeg: {e}")
        return FFmpegResult(
            success=False,
            output_path=command.output_path,
            error=f"Failed to spawn FFmpeg: {e}",
            failure=FailureKind.SPAWN,
        )

    try:
        _, stderr_output = process.communicate(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        elapsed = time.monotonic() - start_time
        logger.warning(f"FFmpeg timeout after {elapsed:.1f}s (limit: {timeout_seconds}s)")
        _kill_process_group(process)
        # Reap the child and drain the pipe so nothing outlives this call
        _, stderr_output = process.communicate()
        return FFmpegResult(
            success=False,
            output_path=command.output_path,
            error=f"FFmpeg timeout after {int(timeout_seconds * 1000)}ms",
            failure=FailureKind.TIMEOUT,
            return_code=process.returncode,
            stderr=stderr_output or "",
        )
    except BaseException:
        # Interrupted while waiting (e.g. worker shutdown): never leak the child
        _kill_process_group(process)
        process.wait()
        raise

    duration_ms = int((time.monotonic() - start_time) * 1000)
    stderr_output = stderr_output or ""
    return_code = process.returncode

    if return_code != 0:
        message = extract_error_message(stderr_output)
        logger.error(f"FFmpeg failed with code {return_code}: {message}")
        return FFmpegResult(
            success=False,
            output_path=command.output_path,
            duration_ms=duration_ms,
            error=f"FFmpeg exited with code {return_code}: {message}",
            failure=FailureKind.EXIT_CODE,
            return_code=return_code,
            stderr=stderr_output,
        )

    if not Path(command.output_path).exists():
        logger.error("FFmpeg completed but output file not found")
        return FFmpegResult(
            success=False,
            output_path=command.output_path,
            duration_ms=duration_ms,
            error="Output file not found after FFmpeg completed",
            failure=FailureKind.MISSING_OUTPUT,
            return_code=return_code,
            stderr=stderr_output,
        )

    logger.info(f"FFmpeg completed in {duration_ms}ms: {command.output_path}")
    return FFmpegResult(
        success=True,
        output_path=command.output_path,
        duration_ms=duration_ms,
        return_code=return_code,
        stderr=stderr_output,
    )


def extract_error_message(stderr: str) -> str:
    """
    Extract a meaningful error message from FFmpeg stderr.

    Returns the first match of ERROR_PATTERNS, else the last few stderr lines
    joined with spaces.
    """
    for pattern in ERROR_PATTERNS:
        match = pattern.search(stderr)
        if match:
            return match.group(0).strip()

    lines = stderr.strip().splitlines()
    return " ".join(lines[-STDERR_TAIL_LINES:])


def _kill_process_group(process: subprocess.Popen) -> None:
    """
    Kill FFmpeg process and its entire process group.

    Uses SIGKILL to ensure immediate termination.
    Catches and logs any errors during termination.

    Args:
        process: The subprocess.Popen instance to kill
    """
    try:
        pgid = os.getpgid(process.pid)
        logger.info(f"Killing FFmpeg process group {pgid}")
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug("Process already terminated")
    except OSError as e:
        logger.warning(f"Error killing process group: {e}")
        # Fallback: kill just the process
        try:
            process.kill()
        except ProcessLookupError:
            pass


def ffmpeg_version(binary: str = "ffmpeg") -> Optional[str]:
    """
    Report the installed FFmpeg version.

    Returns:
        Version string (e.g. "6.1.1"), or None if FFmpeg is not available
    """
    try:
        result = subprocess.run(
            [binary, "-version"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"FFmpeg not available: {e}")
        return None

    if result.returncode != 0:
        return None

    match = re.search(r"ffmpeg version (\S+)", result.stdout)
    return match.group(1) if match else "unknown"
