"""xz decompression of downloaded images with progress sampling."""

from __future__ import annotations

import shutil
import subprocess
import time
from pathlib import Path
from typing import Optional

from rpi_sd_provisioner.logging import get_logger

from .capabilities import Decompressor
from .command_runners import last_error_line, terminate_process
from .progress import ProgressReporter

log = get_logger(source="decompress", tags=["decompress", "fetch"])

# Used for the progress bar only when the archive does not record its size
ESTIMATED_EXPANSION_RATIO = 3
SAMPLE_INTERVAL_SECONDS = 0.5


def is_xz_compressed(path: Path) -> bool:
    return path.name.endswith(".xz")


def parse_xz_robot_list(output: str) -> Optional[int]:
    """Uncompressed size from ``xz --robot --list`` output.

    The ``totals`` line is tab separated: streams, blocks, compressed size,
    uncompressed size, ratio, ...
    """
    for line in output.splitlines():
        fields = line.split("\t")
        if fields and fields[0] == "totals" and len(fields) > 4:
            try:
                size = int(fields[4])
            except ValueError:
                return None
            return size if size > 0 else None
    return None


def estimate_uncompressed_size(compressed_path: Path) -> int:
    return compressed_path.stat().st_size * ESTIMATED_EXPANSION_RATIO


class XzDecompressor(Decompressor):
    """Decompressor backed by xz(1)."""

    def _xz(self) -> str:
        xz_path = shutil.which("xz")
        if not xz_path:
            raise RuntimeError("xz not found")
        return xz_path

    def uncompressed_size(self, path: Path) -> Optional[int]:
        try:
            result = subprocess.run(
                [self._xz(), "--robot", "--list", str(path)],
                capture_output=True,
                text=True,
            )
        except (OSError, RuntimeError) as error:
            log.debug(f"xz --list unavailable for {path}: {error}")
            return None
        if result.returncode != 0:
            log.debug(f"xz --list failed for {path}: {result.stderr.strip()}")
            return None
        return parse_xz_robot_list(result.stdout)

    def decompress(
        self,
        source: Path,
        destination: Path,
        progress: Optional[ProgressReporter] = None,
    ) -> None:
        """Run ``xz -dc`` into ``destination`` while sampling its size.

        Raises:
            RuntimeError: If xz is missing or exits non-zero
        """
        command = [self._xz(), "-dc", str(source)]
        log.debug(f"Running command: {' '.join(command)} > {destination}")
        with open(destination, "wb") as output:
            process = subprocess.Popen(command, stdout=output, stderr=subprocess.PIPE)
            try:
                while process.poll() is None:
                    if progress is not None:
                        progress.update(destination.stat().st_size)
                    time.sleep(SAMPLE_INTERVAL_SECONDS)
                _, stderr = process.communicate()
            except BaseException:
                terminate_process(process)
                raise
        if progress is not None:
            progress.update(destination.stat().st_size)
        if process.returncode != 0:
            message = last_error_line(stderr.decode("utf-8", errors="replace"))
            raise RuntimeError(
                f"xz exited with status {process.returncode}: {message or 'unknown error'}"
            )
