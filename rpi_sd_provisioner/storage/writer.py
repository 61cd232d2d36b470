"""Raw image write onto the target device.

This is the one irreversible step of a run. ``write_image`` refuses to start
unless the device was confirmed by the operator and none of its partitions
is mounted; once dd has started, any failure leaves the card in an
undefined state.
"""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Optional

from rpi_sd_provisioner.domain import TargetDevice, WriteResult
from rpi_sd_provisioner.exceptions import PreconditionError, PreconditionReason, WriteError
from rpi_sd_provisioner.logging import LoggerFactory

from .capabilities import BlockWriter, Mounter
from .command_runners import last_error_line, run_with_streaming_progress
from .progress import ProgressFactory, ProgressReporter, null_progress

log = LoggerFactory.for_write()

DEFAULT_BLOCK_SIZE = "4M"


class DdBlockWriter(BlockWriter):
    """BlockWriter backed by dd(1) with ``status=progress``."""

    def __init__(self, block_size: str = DEFAULT_BLOCK_SIZE):
        self.block_size = block_size
        self.last_error = ""

    def command(self, image_path: Path, device_path: str) -> list[str]:
        dd_path = shutil.which("dd") or "dd"
        return [
            dd_path,
            f"if={image_path}",
            f"of={device_path}",
            f"bs={self.block_size}",
            "status=progress",
            "conv=fsync",
        ]

    def write(
        self,
        image_path: Path,
        device_path: str,
        total_bytes: int,
        progress: Optional[ProgressReporter] = None,
    ) -> int:
        if progress is not None:
            progress.set_total(total_bytes)
        result = run_with_streaming_progress(
            self.command(image_path, device_path), progress=progress
        )
        self.last_error = last_error_line(result.stderr)
        return result.returncode


def write_image(
    image_path: Path,
    device: TargetDevice,
    writer: BlockWriter,
    mounter: Mounter,
    progress_factory: ProgressFactory = null_progress,
) -> WriteResult:
    """Stream ``image_path`` onto ``device``.

    Raises:
        PreconditionError: If the device is unconfirmed or still mounted
        WriteError: If the copy does not finish successfully
    """
    if not device.confirmed:
        raise PreconditionError(
            PreconditionReason.NOT_CONFIRMED,
            f"Refusing to write {device.device_path}: not confirmed by the operator",
        )
    mounted = mounter.mounted_partitions(device.device_path)
    if mounted:
        raise PreconditionError(
            PreconditionReason.DEVICE_BUSY,
            f"Refusing to write {device.device_path}: mounted at "
            f"{', '.join(mounted.values())}",
            hint="Unmount the card's partitions and try again.",
        )

    image_path = Path(image_path)
    total_bytes = image_path.stat().st_size
    log.info(f"Writing {image_path.name} to {device.device_path}")
    started = time.monotonic()
    try:
        with progress_factory(f"Writing {device.device_path}", total_bytes) as progress:
            status = writer.write(image_path, device.device_path, total_bytes, progress)
            if status != 0:
                detail = getattr(writer, "last_error", "") or "unknown error"
                raise WriteError(
                    device.device_path, f"copy exited with status {status}: {detail}"
                )
    except (OSError, RuntimeError) as error:
        raise WriteError(device.device_path, str(error)) from error
    duration = time.monotonic() - started
    log.success(f"Wrote {total_bytes} bytes to {device.device_path} in {duration:.1f}s")
    return WriteResult(
        image_path=image_path,
        device_path=device.device_path,
        bytes_written=total_bytes,
        duration_seconds=duration,
    )
