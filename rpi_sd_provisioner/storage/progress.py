"""Progress monitoring and formatting for long-running pipeline steps.

Download, decompression and the device write each report byte counts to a
``ProgressReporter``. The base class only records the numbers; the console
implementation renders a rich progress bar and leaves throttled TRACE lines
in the logs.
"""

from __future__ import annotations

import re
import time
from typing import Callable, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from rpi_sd_provisioner.logging import ThrottledLogger, get_logger
from rpi_sd_provisioner.storage.devices import human_size

log = get_logger(source="progress", tags=["progress"])

_DD_BYTES_PATTERN = re.compile(r"^\s*(\d+)\s+bytes")


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_progress_line(title, completed, total=None, rate=None, eta=None):
    """Single-line progress summary used for log output."""
    line = f"{title}: {human_size(completed)}"
    if total:
        line = f"{line} / {human_size(total)} ({min(completed / total, 1.0) * 100:.1f}%)"
    if rate:
        line = f"{line} {human_size(rate)}/s"
        if eta:
            line = f"{line} ETA {eta}"
    return line


def parse_dd_progress(line: str) -> Optional[int]:
    """Extract the byte count from a dd ``status=progress`` line."""
    match = _DD_BYTES_PATTERN.search(line)
    if not match:
        return None
    return int(match.group(1))


class ProgressReporter:
    """Records progress for one operation without rendering anything."""

    def __init__(self, title: str, total: Optional[int] = None):
        self.title = title
        self.total = total
        self.completed = 0
        self.finished = False
        self.succeeded: Optional[bool] = None

    def __enter__(self) -> ProgressReporter:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.finish(success=exc_type is None)

    def start(self) -> None:
        return None

    def set_total(self, total: Optional[int]) -> None:
        self.total = total

    def update(self, completed: int) -> None:
        self.completed = completed

    def advance(self, amount: int) -> None:
        self.update(self.completed + amount)

    def finish(self, success: bool = True) -> None:
        self.finished = True
        self.succeeded = success


class ConsoleProgress(ProgressReporter):
    """Rich progress bar on the terminal plus throttled TRACE log lines."""

    def __init__(
        self,
        title: str,
        total: Optional[int] = None,
        console: Optional[Console] = None,
    ):
        super().__init__(title, total)
        self._progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console,
        )
        self._task_id = None
        self._throttled = ThrottledLogger(log, interval_seconds=5.0)
        self._started_at: Optional[float] = None

    def start(self) -> None:
        self._started_at = time.monotonic()
        self._progress.start()
        self._task_id = self._progress.add_task(self.title, total=self.total)

    def set_total(self, total: Optional[int]) -> None:
        super().set_total(total)
        if self._task_id is not None:
            self._progress.update(self._task_id, total=total)

    def update(self, completed: int) -> None:
        super().update(completed)
        if self._task_id is not None:
            self._progress.update(self._task_id, completed=completed)
        rate = None
        eta = None
        if self._started_at is not None:
            elapsed = time.monotonic() - self._started_at
            if elapsed > 0 and completed:
                rate = completed / elapsed
                if self.total and completed <= self.total:
                    eta = format_eta((self.total - completed) / rate)
        self._throttled.trace(
            self.title,
            format_progress_line(self.title, completed, self.total, rate, eta),
        )

    def finish(self, success: bool = True) -> None:
        if self._task_id is not None and success and self.total:
            self._progress.update(self._task_id, completed=self.total)
        self._progress.stop()
        super().finish(success)


ProgressFactory = Callable[[str, Optional[int]], ProgressReporter]


def null_progress(title: str, total: Optional[int] = None) -> ProgressReporter:
    return ProgressReporter(title, total)
