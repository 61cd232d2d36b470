"""Exceptions raised by the provisioning pipeline.

Every fatal condition is reported with the resource involved and, where the
operator can do something about it, a remediation hint that the CLI prints
beneath the error.

Exception Hierarchy:
    ProvisionError (base)
        ├── PreconditionError
        │   ├── NoDeviceError
        │   ├── AmbiguousDeviceError
        │   ├── InsufficientCapacityError
        │   ├── InsufficientDiskSpaceError
        │   ├── UnmountFailedError
        │   └── OperatorDeclinedError
        ├── ResolutionError
        ├── FetchError
        │   ├── DownloadError
        │   ├── ChecksumMismatchError
        │   ├── DecompressionError
        │   └── ImageNotFoundError
        ├── WriteError
        ├── ConfigError
        │   ├── MountFailedError
        │   └── ConfigWriteError
        └── BootTimeoutError

Usage:
    from rpi_sd_provisioner.exceptions import InsufficientCapacityError

    if device.size_bytes < minimum:
        raise InsufficientCapacityError(device.device_path, device.size_bytes, minimum)
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from rpi_sd_provisioner.storage.devices import human_size

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_BOOT_TIMEOUT = 3
EXIT_INTERRUPTED = 130


class ProvisionError(Exception):
    """Base exception for all provisioning failures."""

    def __init__(self, message: str, hint: Optional[str] = None):
        self.hint = hint
        super().__init__(message)


class PreconditionReason(Enum):
    NOT_ROOT = "not-root"
    MISSING_TOOLS = "missing-tools"
    NO_DEVICE = "no-device"
    AMBIGUOUS_DEVICE = "ambiguous-device"
    INSUFFICIENT_CAPACITY = "insufficient-capacity"
    INSUFFICIENT_DISK_SPACE = "insufficient-disk-space"
    DEVICE_BUSY = "device-busy"
    UNMOUNT_FAILED = "unmount-failed"
    OPERATOR_DECLINED = "operator-declined"
    NOT_CONFIRMED = "not-confirmed"


class PreconditionError(ProvisionError):
    """The host, the device or the operator is not ready for the run."""

    def __init__(
        self,
        reason: PreconditionReason,
        message: str,
        hint: Optional[str] = None,
    ):
        self.reason = reason
        super().__init__(message, hint)


class NoDeviceError(PreconditionError):
    def __init__(self):
        super().__init__(
            PreconditionReason.NO_DEVICE,
            "No removable SD card or USB disk detected",
            hint="Insert an SD card and try again.",
        )


class AmbiguousDeviceError(PreconditionError):
    def __init__(self, device_paths: Iterable[str]):
        self.device_paths = list(device_paths)
        super().__init__(
            PreconditionReason.AMBIGUOUS_DEVICE,
            f"Multiple removable devices detected: {', '.join(self.device_paths)}",
            hint="Remove all removable media except the card to provision.",
        )


class InsufficientCapacityError(PreconditionError):
    def __init__(self, device_path: str, size_bytes: int, required_bytes: int):
        self.device_path = device_path
        self.size_bytes = size_bytes
        self.required_bytes = required_bytes
        super().__init__(
            PreconditionReason.INSUFFICIENT_CAPACITY,
            f"Device {device_path} is too small: {human_size(size_bytes)} "
            f"(at least {human_size(required_bytes)} required)",
            hint="Use a larger SD card.",
        )


class InsufficientDiskSpaceError(PreconditionError):
    def __init__(self, path: str, free_bytes: int, required_bytes: int):
        self.path = path
        self.free_bytes = free_bytes
        self.required_bytes = required_bytes
        super().__init__(
            PreconditionReason.INSUFFICIENT_DISK_SPACE,
            f"Not enough free space in {path}: {human_size(free_bytes)} free, "
            f"{human_size(required_bytes)} required",
            hint="Free some disk space or choose another cache directory.",
        )


class UnmountFailedError(PreconditionError):
    """A partition of the target device could not be unmounted."""

    def __init__(self, device_path: str, mountpoints: list[str]):
        self.device_path = device_path
        self.mountpoints = mountpoints
        mounts_str = ", ".join(mountpoints)
        super().__init__(
            PreconditionReason.UNMOUNT_FAILED,
            f"Failed to unmount {device_path}. Active mountpoints: {mounts_str}",
            hint="Close any program using the card and try again.",
        )


class OperatorDeclinedError(PreconditionError):
    def __init__(self, device_path: str):
        self.device_path = device_path
        super().__init__(
            PreconditionReason.OPERATOR_DECLINED,
            f"Operation aborted: {device_path} was not confirmed",
        )


class ResolutionError(ProvisionError):
    """No image source could be determined for the requested variant."""


class FetchReason(Enum):
    DOWNLOAD_FAILED = "download-failed"
    CHECKSUM_MISMATCH = "checksum-mismatch"
    DECOMPRESS_FAILED = "decompress-failed"
    IMAGE_NOT_FOUND = "image-not-found"


class FetchError(ProvisionError):
    """Downloading, verifying or decompressing the image failed."""

    def __init__(
        self,
        reason: FetchReason,
        message: str,
        path: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        self.reason = reason
        self.path = path
        super().__init__(message, hint)


class DownloadError(FetchError):
    def __init__(self, url: str, detail: str):
        self.url = url
        super().__init__(
            FetchReason.DOWNLOAD_FAILED,
            f"Download of {url} failed: {detail}",
            path=url,
            hint="Check the network connection and re-run.",
        )


class ChecksumMismatchError(FetchError):
    def __init__(self, path: str, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            FetchReason.CHECKSUM_MISMATCH,
            f"Checksum mismatch for {path}: expected {expected}, got {actual}",
            path=path,
            hint="The download is corrupt; re-run to fetch it again.",
        )


class DecompressionError(FetchError):
    def __init__(self, path: str, detail: str):
        super().__init__(
            FetchReason.DECOMPRESS_FAILED,
            f"Decompression of {path} failed: {detail}",
            path=path,
        )


class ImageNotFoundError(FetchError):
    def __init__(self, path: str):
        super().__init__(
            FetchReason.IMAGE_NOT_FOUND,
            f"Image file {path} does not exist or is empty",
            path=path,
            hint="Check the path given with --image.",
        )


class WriteError(ProvisionError):
    """The image could not be written; the device state is indeterminate."""

    def __init__(self, device_path: str, detail: str):
        self.device_path = device_path
        super().__init__(
            f"DeviceWriteFailed: writing to {device_path} failed: {detail}",
            hint="Check the SD card and try again; its contents are now undefined.",
        )


class ConfigReason(Enum):
    MOUNT_FAILED = "mount-failed"
    WRITE_FAILED = "write-failed"


class ConfigError(ProvisionError):
    """Mounting or configuring the freshly written partitions failed."""

    def __init__(self, reason: ConfigReason, message: str, path: str):
        self.reason = reason
        self.path = path
        super().__init__(message)


class MountFailedError(ConfigError):
    def __init__(self, partition: str, mountpoint: str, detail: str):
        self.partition = partition
        super().__init__(
            ConfigReason.MOUNT_FAILED,
            f"Failed to mount {partition} to {mountpoint}: {detail}",
            path=mountpoint,
        )


class ConfigWriteError(ConfigError):
    def __init__(self, path: str, detail: str):
        super().__init__(
            ConfigReason.WRITE_FAILED,
            f"Failed to write {path}: {detail}",
            path=path,
        )


class BootTimeoutError(ProvisionError, TimeoutError):
    """The provisioned board did not answer within the polling window."""

    def __init__(self, hostname: str, timeout_seconds: float):
        self.hostname = hostname
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timeout reached. {hostname} did not respond within "
            f"{int(timeout_seconds)} seconds",
            hint="Check the board's power and WiFi settings, then re-run the poll.",
        )
