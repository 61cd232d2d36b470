"""Run-scoped resource ledger and the supervisor that drains it.

Every step that mounts a partition or creates a transient cache artifact
records it in the ``CleanupLedger``. The ``CleanupSupervisor`` drains the
ledger exactly once, whether the run completes, fails or is interrupted:

    ledger = CleanupLedger()
    supervisor = CleanupSupervisor(ledger, mounter)
    with supervisor.supervise():
        ...  # pipeline steps append to the ledger

Entries are independent: unmount-if-mounted and remove-if-exists, so the
order in which they were recorded never matters.
"""

from __future__ import annotations

import signal
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generator

from rpi_sd_provisioner.logging import LoggerFactory

from .capabilities import Mounter

log = LoggerFactory.for_cleanup()


@dataclass
class CleanupLedger:
    """Mounted paths and transient files acquired during one run."""

    mounts: list[Path] = field(default_factory=list)
    transient_files: list[Path] = field(default_factory=list)

    def track_mount(self, path: Path) -> None:
        path = Path(path)
        if path not in self.mounts:
            self.mounts.append(path)

    def release_mount(self, path: Path) -> None:
        """Forget a mount that was already unmounted by the step that made it."""
        path = Path(path)
        if path in self.mounts:
            self.mounts.remove(path)

    def track_file(self, path: Path) -> None:
        path = Path(path)
        if path not in self.transient_files:
            self.transient_files.append(path)

    def release_file(self, path: Path) -> None:
        """Forget a transient file that was already removed or promoted."""
        path = Path(path)
        if path in self.transient_files:
            self.transient_files.remove(path)

    def is_empty(self) -> bool:
        return not self.mounts and not self.transient_files


@dataclass
class CleanupReport:
    unmounted: list[Path] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


class OperatorInterrupt(KeyboardInterrupt):
    """Raised from the SIGTERM handler so termination unwinds like Ctrl+C."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(signal.Signals(signum).name)


def _restorable(handler):
    # signal.signal() reports handlers installed outside Python as None
    return signal.SIG_DFL if handler is None else handler


class CleanupSupervisor:
    """Drains a CleanupLedger at most once per run."""

    def __init__(self, ledger: CleanupLedger, mounter: Mounter):
        self.ledger = ledger
        self.mounter = mounter
        self._done = False

    @property
    def has_run(self) -> bool:
        return self._done

    def cleanup(self) -> CleanupReport:
        """Unmount tracked mounts and remove tracked files.

        A second call is a no-op and returns an empty report. Individual
        failures are logged and collected; the rest of the ledger is still
        processed.
        """
        report = CleanupReport()
        if self._done:
            log.debug("Cleanup already performed; skipping")
            return report
        self._done = True

        for mountpoint in reversed(list(self.ledger.mounts)):
            try:
                if self.mounter.is_mounted(mountpoint):
                    self.mounter.unmount(mountpoint)
                    report.unmounted.append(mountpoint)
                    log.info(f"Unmounted {mountpoint}")
                self.ledger.release_mount(mountpoint)
            except (RuntimeError, ValueError, OSError) as error:
                report.failures.append(f"{mountpoint}: {error}")
                log.error(f"Could not unmount {mountpoint}: {error}")

        for path in list(self.ledger.transient_files):
            try:
                if path.exists():
                    path.unlink()
                    report.removed.append(path)
                    log.info(f"Removed transient file {path}")
                self.ledger.release_file(path)
            except OSError as error:
                report.failures.append(f"{path}: {error}")
                log.error(f"Could not remove {path}: {error}")

        if not report.unmounted and not report.removed and not report.failures:
            log.debug("Nothing to clean up")
        return report

    @contextmanager
    def supervise(self) -> Generator[CleanupSupervisor, None, None]:
        """Run the wrapped block and always clean up on the way out.

        SIGTERM is turned into an OperatorInterrupt for the duration so that
        termination unwinds through here exactly like Ctrl+C does.
        """

        def _terminate(signum, frame):
            raise OperatorInterrupt(signum)

        previous = signal.signal(signal.SIGTERM, _terminate)
        try:
            yield self
        finally:
            # Keep a second Ctrl+C from abandoning mounted partitions
            previous_int = signal.signal(signal.SIGINT, signal.SIG_IGN)
            try:
                self.cleanup()
            finally:
                signal.signal(signal.SIGINT, _restorable(previous_int))
                signal.signal(signal.SIGTERM, _restorable(previous))
