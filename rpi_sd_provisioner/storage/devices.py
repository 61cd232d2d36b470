"""Removable block device detection using lsblk.

Device Detection:
    Uses lsblk with JSON output to enumerate block devices and their properties:
    - Device name (e.g., mmcblk0, sdb)
    - Size in bytes
    - Mountpoints of the device and its partitions
    - Vendor and model strings
    - Removable flag and transport

Filtering Logic:
    A disk is a provisioning candidate when:

    1. It is of type "disk"
    2. It is NOT the host's own system disk (nothing mounted at /, /boot,
       /boot/firmware on it or its partitions)
    3. It is removable (rm=1), USB-attached (tran=usb), or an MMC card
       reader device (mmcblk*)

    Picking between several candidates is deliberately left to the device
    guard, which refuses to choose.
"""

from __future__ import annotations

import json
import subprocess
from typing import Any, Optional

from rpi_sd_provisioner.domain import TargetDevice
from rpi_sd_provisioner.logging import LoggerFactory

ROOT_MOUNTPOINTS = {"/", "/boot", "/boot/firmware"}
LSBLK_COLUMNS = "NAME,TYPE,SIZE,MODEL,VENDOR,TRAN,RM,MOUNTPOINT,FSTYPE,LABEL"

log = LoggerFactory.for_device()


def run_command(command, check=True, log_output=True, log_command=True):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def get_block_devices() -> list[dict[str, Any]]:
    """Return block device data from lsblk.

    An lsblk failure or unparsable output yields an empty list, which the
    guard then reports as "no device".
    """
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS],
            log_output=False,
        )
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, json.JSONDecodeError, OSError) as error:
        log.warning(f"lsblk failed: {error}")
        return []
    devices = data.get("blockdevices", [])
    names = [device.get("name") for device in devices if device.get("name")]
    if names:
        log.debug(f"lsblk found {len(names)} devices: {', '.join(names)}")
    else:
        log.debug("lsblk found no block devices")
    return devices


def get_children(device: dict[str, Any]) -> list[dict[str, Any]]:
    return device.get("children", []) or []


def has_root_mountpoint(device: dict[str, Any]) -> bool:
    mountpoint = device.get("mountpoint")
    if mountpoint in ROOT_MOUNTPOINTS:
        return True
    for child in get_children(device):
        if has_root_mountpoint(child):
            return True
    return False


def is_root_device(device: dict[str, Any]) -> bool:
    if device.get("type") != "disk":
        return False
    return has_root_mountpoint(device)


def _flag(value: Any) -> bool:
    # lsblk reports rm as true/false, 1/0 or "1"/"0" depending on version
    return value in (True, 1, "1", "true")


def is_candidate_device(device: dict[str, Any]) -> bool:
    if device.get("type") != "disk":
        return False
    if is_root_device(device):
        return False
    name = device.get("name") or ""
    return _flag(device.get("rm")) or device.get("tran") == "usb" or name.startswith("mmcblk")


def list_candidate_devices(
    block_devices: Optional[list[dict[str, Any]]] = None,
) -> list[TargetDevice]:
    """Return every removable disk that could receive an image."""
    if block_devices is None:
        block_devices = get_block_devices()
    candidates = [
        TargetDevice.from_lsblk_dict(device)
        for device in block_devices
        if is_candidate_device(device)
    ]
    log.debug(
        "Candidate devices: "
        + (", ".join(device.device_path for device in candidates) or "none")
    )
    return candidates
