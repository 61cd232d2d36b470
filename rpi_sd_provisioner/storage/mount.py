"""Mount inspection and mount/unmount of the target's partitions.

Mount state is read from /proc/mounts rather than lsblk so that a partition
mounted a moment ago by the desktop automounter is still seen. All commands
are run with argument lists; device nodes are validated before use.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Iterator

from rpi_sd_provisioner.logging import LoggerFactory

from .capabilities import Mounter

PROC_MOUNTS = Path("/proc/mounts")
_FORBIDDEN_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")

log = LoggerFactory.for_config()


def _validate_device_node(device: str) -> None:
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if any(char in device for char in _FORBIDDEN_CHARS):
        raise ValueError(f"Device path contains invalid characters: {device}")


def _unescape_mount_field(value: str) -> str:
    # /proc/mounts octal-escapes spaces, tabs and newlines
    return (
        value.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def iter_proc_mounts(proc_mounts: Path = PROC_MOUNTS) -> Iterator[tuple[str, str]]:
    """Yield (source, mountpoint) pairs from /proc/mounts."""
    try:
        with open(proc_mounts, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1:
                    yield _unescape_mount_field(parts[0]), _unescape_mount_field(parts[1])
    except FileNotFoundError:
        return


def is_mountpoint_active(mountpoint: str | Path, proc_mounts: Path = PROC_MOUNTS) -> bool:
    target = str(mountpoint).rstrip("/") or "/"
    if not proc_mounts.exists():
        return os.path.ismount(target)
    return any(mp == target for _, mp in iter_proc_mounts(proc_mounts))


def _is_partition_of(source: str, device_path: str) -> bool:
    if not source.startswith(device_path) or source == device_path:
        return False
    suffix = source[len(device_path):]
    # Disks whose name ends in a digit number their partitions as <disk>p<N>
    if device_path[-1].isdigit():
        if not suffix.startswith("p"):
            return False
        suffix = suffix[1:]
    return suffix.isdigit()


def mounted_partitions(
    device_path: str, proc_mounts: Path = PROC_MOUNTS
) -> dict[str, str]:
    """Map partition node -> mountpoint for every mounted partition of a disk.

    A filesystem mounted on the whole disk node is included too.
    """
    mounted: dict[str, str] = {}
    for source, mountpoint in iter_proc_mounts(proc_mounts):
        if source == device_path or _is_partition_of(source, device_path):
            mounted.setdefault(source, mountpoint)
    return mounted


class SystemMounter(Mounter):
    """Mounter backed by mount(8) and umount(8)."""

    def __init__(self, proc_mounts: Path = PROC_MOUNTS):
        self.proc_mounts = proc_mounts

    def is_mounted(self, path: Path) -> bool:
        return is_mountpoint_active(path, self.proc_mounts)

    def mounted_partitions(self, device_path: str) -> dict[str, str]:
        return mounted_partitions(device_path, self.proc_mounts)

    def mount(self, partition: str, mountpoint: Path) -> None:
        """Mount a partition onto an existing directory.

        Raises:
            ValueError: If the partition node is invalid
            RuntimeError: If mount fails
        """
        _validate_device_node(partition)
        try:
            subprocess.run(
                ["mount", partition, str(mountpoint)],
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            raise RuntimeError(
                f"Failed to mount {partition} to {mountpoint}: {e.stderr.strip()}"
            ) from e
        log.debug(f"Mounted {partition} on {mountpoint}")

    def unmount(self, target: str | Path) -> None:
        """Unmount a mountpoint or a partition node.

        Raises:
            ValueError: If a device node target is invalid
            RuntimeError: If umount fails
        """
        target = str(target)
        if target.startswith("/dev/"):
            _validate_device_node(target)
        try:
            subprocess.run(["sync"], check=False, capture_output=True, text=True)
            subprocess.run(
                ["umount", target], check=True, capture_output=True, text=True
            )
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"Failed to unmount {target}: {e.stderr.strip()}") from e
        log.debug(f"Unmounted {target}")
