"""Safety checks that stand between the operator and a destructive write.

Every check raises a ``PreconditionError`` subclass instead of returning a
boolean, so a run can never drift past a failed check:

    check_root()
    require_tools()
    device = guard(list_candidate_devices(), config.min_device_bytes)
    check_cache_space(config.cache_dir, config.min_cache_free_bytes)
    ...
    device = confirm_device(device, ask)
    ensure_unmounted(device, mounter)

``TargetDevice.confirmed`` is only ever set by ``confirm_device``.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

import psutil

from rpi_sd_provisioner.domain import TargetDevice
from rpi_sd_provisioner.exceptions import (
    AmbiguousDeviceError,
    InsufficientCapacityError,
    InsufficientDiskSpaceError,
    NoDeviceError,
    OperatorDeclinedError,
    PreconditionError,
    PreconditionReason,
    UnmountFailedError,
)
from rpi_sd_provisioner.logging import LoggerFactory

from .capabilities import Mounter
from .devices import human_size

log = LoggerFactory.for_device()

# tool -> Debian package providing it
REQUIRED_TOOLS = {
    "dd": "coreutils",
    "sha256sum": "coreutils",
    "xz": "xz-utils",
    "mount": "mount",
    "umount": "mount",
    "lsblk": "util-linux",
    "ping": "iputils-ping",
    "openssl": "openssl",
}

AFFIRMATIVE_ANSWERS = {"y", "yes"}


def is_affirmative(answer: Optional[str]) -> bool:
    return (answer or "").strip().lower() in AFFIRMATIVE_ANSWERS


def check_root(geteuid: Callable[[], int] = os.geteuid) -> None:
    if geteuid() != 0:
        raise PreconditionError(
            PreconditionReason.NOT_ROOT,
            "Root privileges are required to write block devices",
            hint="Re-run with sudo.",
        )


def require_tools(tools: Optional[dict[str, str]] = None) -> None:
    """Fail if any helper tool is missing from PATH."""
    tools = REQUIRED_TOOLS if tools is None else tools
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        packages = sorted({tools[tool] for tool in missing})
        raise PreconditionError(
            PreconditionReason.MISSING_TOOLS,
            f"Required tools not found: {', '.join(missing)}",
            hint=f"Install them with: sudo apt install {' '.join(packages)}",
        )
    log.debug(f"All required tools present: {', '.join(tools)}")


def _existing_ancestor(path: Path) -> Path:
    path = Path(path).expanduser().absolute()
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


def check_cache_space(cache_dir: Path, required_bytes: int) -> int:
    """Ensure the cache filesystem has room for a download and its image.

    The cache directory itself may not exist yet; the nearest existing
    ancestor is measured instead.

    Returns:
        Free bytes on the cache filesystem
    """
    probe = _existing_ancestor(cache_dir)
    free_bytes = psutil.disk_usage(str(probe)).free
    if free_bytes < required_bytes:
        raise InsufficientDiskSpaceError(str(cache_dir), free_bytes, required_bytes)
    log.debug(f"{human_size(free_bytes)} free for cache at {cache_dir}")
    return free_bytes


def select_device(candidates: Sequence[TargetDevice]) -> TargetDevice:
    if not candidates:
        raise NoDeviceError()
    if len(candidates) > 1:
        raise AmbiguousDeviceError(device.device_path for device in candidates)
    return candidates[0]


def check_capacity(device: TargetDevice, min_bytes: int) -> None:
    if device.size_bytes < min_bytes:
        raise InsufficientCapacityError(device.device_path, device.size_bytes, min_bytes)


def guard(candidates: Iterable[TargetDevice], min_bytes: int) -> TargetDevice:
    """Pick the single removable device and check that it is large enough."""
    device = select_device(list(candidates))
    check_capacity(device, min_bytes)
    log.info(f"Target device: {device.format_label()}")
    return device


def confirm_device(device: TargetDevice, ask: Callable[[str], str]) -> TargetDevice:
    """Ask the operator to confirm the exact device path.

    Returns:
        A copy of ``device`` marked as confirmed

    Raises:
        OperatorDeclinedError: On any answer other than y/yes
    """
    question = (
        f"All data on {device.format_label()} will be erased. "
        f"Write to {device.device_path}? (y/N)"
    )
    answer = ask(question)
    if not is_affirmative(answer):
        log.warning(f"Operator declined writing to {device.device_path}")
        raise OperatorDeclinedError(device.device_path)
    log.info(f"Operator confirmed {device.device_path}")
    return replace(device, confirmed=True)


def ensure_unmounted(device: TargetDevice, mounter: Mounter) -> list[str]:
    """Unmount every mounted partition of ``device``.

    Returns:
        The mountpoints that were unmounted

    Raises:
        UnmountFailedError: If anything of the device is still mounted afterwards
    """
    mounted = mounter.mounted_partitions(device.device_path)
    unmounted: list[str] = []
    for partition, mountpoint in mounted.items():
        log.info(f"Unmounting {partition} from {mountpoint}")
        try:
            mounter.unmount(mountpoint)
        except (RuntimeError, ValueError, OSError) as error:
            log.error(f"Failed to unmount {partition}: {error}")
            continue
        unmounted.append(mountpoint)

    remaining = mounter.mounted_partitions(device.device_path)
    if remaining:
        raise UnmountFailedError(device.device_path, list(remaining.values()))
    return unmounted
