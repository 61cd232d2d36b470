"""Domain model for SD card provisioning.

Typed records that flow between the pipeline stages: which image variant was
requested, where it comes from, what it looks like in the cache, which device
it goes to, and what the operator asked to be configured on first boot.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

COMPRESSED_SUFFIXES = (".xz",)


# ==============================================================================
# Image Domain
# ==============================================================================


class Flavor(Enum):
    """Raspberry Pi OS flavour."""

    LITE = "lite"
    FULL = "full"


class Architecture(Enum):
    """Userland architecture of the image."""

    ARM64 = "arm64"
    ARMHF = "armhf"

    @property
    def bits(self) -> int:
        return 64 if self is Architecture.ARM64 else 32

    @classmethod
    def from_bits(cls, bits: int | str) -> Architecture:
        value = str(bits).strip().lower()
        if value in ("64", "arm64", "aarch64"):
            return cls.ARM64
        if value in ("32", "armhf"):
            return cls.ARMHF
        raise ValueError(f"Unsupported architecture: {bits}")


@dataclass(frozen=True)
class ImageVariant:
    """A requested image: flavour x architecture."""

    flavor: Flavor
    architecture: Architecture

    @property
    def directory_name(self) -> str:
        """Vendor listing directory, e.g. raspios_lite_arm64 or raspios_armhf."""
        if self.flavor is Flavor.LITE:
            return f"raspios_lite_{self.architecture.value}"
        return f"raspios_{self.architecture.value}"

    @property
    def label(self) -> str:
        return f"{self.flavor.value}/{self.architecture.bits}-bit"

    @classmethod
    def all(cls) -> list[ImageVariant]:
        return [
            cls(flavor, architecture)
            for flavor in Flavor
            for architecture in Architecture
        ]


@dataclass(frozen=True)
class ImageSource:
    """Where an image lives and how to check it.

    Immutable once resolved, whether it came from the live listing or the
    pinned fallback catalog.
    """

    base_url: str  # URI prefix ending in "/"
    filename: str  # e.g. 2024-07-04-raspios-bookworm-arm64-lite.img.xz
    checksum_filename: str  # e.g. <filename>.sha256
    pinned: bool = False

    @property
    def image_url(self) -> str:
        return f"{self.base_url}{self.filename}"

    @property
    def checksum_url(self) -> str:
        return f"{self.base_url}{self.checksum_filename}"

    @property
    def is_compressed(self) -> bool:
        return self.filename.endswith(COMPRESSED_SUFFIXES)

    @property
    def decompressed_filename(self) -> str:
        """Cache filename with the compression suffix stripped."""
        for suffix in COMPRESSED_SUFFIXES:
            if self.filename.endswith(suffix):
                return self.filename[: -len(suffix)]
        return self.filename


class CacheState(Enum):
    """Lifecycle of an image inside the cache directory."""

    ABSENT = "absent"
    COMPRESSED_UNVERIFIED = "compressed-unverified"
    COMPRESSED_VERIFIED = "compressed-verified"
    DECOMPRESSED = "decompressed"


@dataclass(frozen=True)
class CachedImage:
    path: Path
    state: CacheState

    @property
    def is_ready(self) -> bool:
        return self.state is CacheState.DECOMPRESSED


# ==============================================================================
# Device Domain
# ==============================================================================


_NUMBERED_PARTITION_PREFIXES = ("mmcblk", "nvme", "loop")


def partition_name(device_name: str, number: int) -> str:
    """Name of the nth partition, e.g. sda -> sda1, mmcblk0 -> mmcblk0p1."""
    if device_name.startswith(_NUMBERED_PARTITION_PREFIXES) or re.search(
        r"\d$", device_name
    ):
        return f"{device_name}p{number}"
    return f"{device_name}{number}"


@dataclass(frozen=True)
class TargetDevice:
    """The removable block device that will receive the image.

    ``confirmed`` is only ever set by the device guard after the operator
    typed an affirmative answer for this exact device path.
    """

    name: str  # e.g., "mmcblk0"
    size_bytes: int
    vendor: str | None = None
    model: str | None = None
    confirmed: bool = False

    @property
    def device_path(self) -> str:
        return f"/dev/{self.name}"

    @property
    def boot_partition(self) -> str:
        return f"/dev/{partition_name(self.name, 1)}"

    @property
    def root_partition(self) -> str:
        return f"/dev/{partition_name(self.name, 2)}"

    @property
    def partitions(self) -> tuple[str, str]:
        """Ordered (boot, root) partition device paths."""
        return (self.boot_partition, self.root_partition)

    @property
    def size_gb(self) -> float:
        return self.size_bytes / (1024**3)

    def format_label(self) -> str:
        """Human-readable label, e.g. "mmcblk0 SanDisk SD32G (29.7GB)"."""
        size_str = f"{self.size_gb:.1f}GB"
        parts = [part.strip() for part in (self.vendor, self.model) if part]
        if parts:
            return f"{self.device_path} {' '.join(parts)} ({size_str})"
        return f"{self.device_path} ({size_str})"

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> TargetDevice:
        """Convert an lsblk dict to a TargetDevice.

        Raises:
            KeyError: If the name key is missing
            ValueError: If size cannot be converted to int
        """
        vendor = device.get("vendor")
        model = device.get("model")
        return cls(
            name=device["name"],
            size_bytes=int(device.get("size") or 0),
            vendor=vendor.strip() if vendor else None,
            model=model.strip() if model else None,
        )


@dataclass(frozen=True)
class MountSet:
    """Where the boot and root partitions get mounted for configuration."""

    boot_mount_path: Path
    root_mount_path: Path

    def __iter__(self):
        return iter((self.boot_mount_path, self.root_mount_path))


# ==============================================================================
# Provisioning Domain
# ==============================================================================


@dataclass(frozen=True)
class LocaleSettings:
    wlan_country: str = "GB"
    keymap: str = "gb"
    timezone: str = "Europe/London"


@dataclass(frozen=True)
class ProvisioningRecord:
    """Operator answers, already hashed. Never persisted outside custom.toml."""

    hostname: str
    username: str
    password_hash: str
    wifi_ssid: str
    wifi_psk_hash: str
    locale: LocaleSettings = LocaleSettings()

    def __repr__(self) -> str:
        return (
            f"ProvisioningRecord(hostname={self.hostname!r}, "
            f"username={self.username!r}, wifi_ssid={self.wifi_ssid!r})"
        )


@dataclass(frozen=True)
class WriteResult:
    image_path: Path
    device_path: str
    bytes_written: int
    duration_seconds: float


@dataclass(frozen=True)
class ConfigResult:
    custom_toml_path: Path
    firmware_config_path: Path
    appended_directives: tuple[str, ...]


@dataclass(frozen=True)
class BootReport:
    """A provisioned board answered on the network."""

    hostname: str
    address: str
    elapsed_seconds: float
    attempts: int

    def ssh_commands(self, username: str) -> list[str]:
        return [f"ssh {username}@{self.hostname}", f"ssh {username}@{self.address}"]
