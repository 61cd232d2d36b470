"""Command execution utilities with progress tracking."""

from __future__ import annotations

import select
import subprocess
from typing import Optional

from rpi_sd_provisioner.logging import get_logger

from .progress import ProgressReporter, parse_dd_progress

log = get_logger(source="command", tags=["command"])

REFRESH_INTERVAL_SECONDS = 1.0
TERMINATE_TIMEOUT_SECONDS = 5.0


def run_checked_command(command, input_text=None):
    """Run a command and raise RuntimeError if it fails."""
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=True,
    )
    if result.returncode != 0:
        stderr = result.stderr.strip()
        stdout = result.stdout.strip()
        message = stderr or stdout or "Command failed"
        raise RuntimeError(f"Command failed ({' '.join(command)}): {message}")
    return result.stdout


def terminate_process(process, timeout: float = TERMINATE_TIMEOUT_SECONDS) -> None:
    """Stop a child that is still running, killing it if SIGTERM is ignored."""
    if process.poll() is not None:
        return
    log.warning(f"Terminating child process {process.pid}")
    process.terminate()
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_with_streaming_progress(
    command,
    progress: Optional[ProgressReporter] = None,
    stdout_target=None,
    stdin_source=None,
) -> subprocess.CompletedProcess:
    """Run a command, feeding dd-style byte counts from stderr to ``progress``.

    The exit status is returned, not checked. Text mode turns dd's carriage
    return updates into separate lines.
    """
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdin=stdin_source,
        stdout=stdout_target or subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    stderr_lines = []
    try:
        while True:
            ready, _, _ = select.select([process.stderr], [], [], REFRESH_INTERVAL_SECONDS)
            line = None
            if ready:
                line = process.stderr.readline()
            if line:
                stderr_lines.append(line)
                log.trace(f"stderr: {line.strip()}")
                bytes_copied = parse_dd_progress(line)
                if bytes_copied is not None and progress is not None:
                    progress.update(bytes_copied)
            if process.poll() is not None and not line:
                break
    except BaseException:
        # Interrupts must not leave dd writing to the device
        terminate_process(process)
        raise
    remaining_stderr = process.stderr.read() if process.stderr else ""
    if remaining_stderr:
        stderr_lines.append(remaining_stderr)
    stdout_data = ""
    if stdout_target is None and process.stdout:
        stdout_data = process.stdout.read()
    process.wait()
    stderr_output = "".join(stderr_lines)
    log.debug(f"Command completed with return code {process.returncode}")
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )


def last_error_line(output: Optional[str]) -> str:
    """Last non-progress line of a tool's stderr, for error messages."""
    if not output:
        return ""
    lines = [
        line.strip()
        for line in output.splitlines()
        if line.strip() and parse_dd_progress(line) is None
    ]
    return lines[-1] if lines else ""
