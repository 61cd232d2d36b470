"""
Pytest configuration and shared fixtures for rpi-sd-provisioner tests.

Every external tool sits behind a capability interface; the fakes below
stand in for them so no test touches real block devices, mounts or the
network.
"""

import hashlib
import lzma
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from rpi_sd_provisioner.config import settings
from rpi_sd_provisioner.domain import LocaleSettings, ProvisioningRecord, TargetDevice
from rpi_sd_provisioner.exceptions import DownloadError
from rpi_sd_provisioner.storage.capabilities import (
    BlockWriter,
    Decompressor,
    Fetcher,
    Mounter,
    Verifier,
)

GIB = 1024**3


# ==============================================================================
# Settings Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep tests away from the operator's real settings file."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture
def config(tmp_path):
    """ProvisionerConfig with cache and mount points under tmp_path."""
    return settings.build_config(
        {
            "cache_dir": tmp_path / "cache",
            "boot_mount_point": tmp_path / "mnt" / "boot",
            "root_mount_point": tmp_path / "mnt" / "root",
        }
    )


# ==============================================================================
# Device Fixtures
# ==============================================================================


@pytest.fixture
def sd_card_lsblk() -> Dict[str, Any]:
    """A 32 GiB SD card in a card reader, as reported by lsblk -J -b."""
    return {
        "name": "mmcblk0",
        "type": "disk",
        "size": 32 * GIB,
        "model": "SD32G",
        "vendor": None,
        "tran": None,
        "rm": True,
        "mountpoint": None,
        "children": [
            {"name": "mmcblk0p1", "type": "part", "size": 536870912, "mountpoint": None},
            {"name": "mmcblk0p2", "type": "part", "size": 32 * GIB - 536870912, "mountpoint": None},
        ],
    }


@pytest.fixture
def system_disk_lsblk() -> Dict[str, Any]:
    """The host's own disk, which must never be offered as a target."""
    return {
        "name": "sda",
        "type": "disk",
        "size": 256 * GIB,
        "model": "Samsung SSD",
        "vendor": "ATA     ",
        "tran": "sata",
        "rm": False,
        "mountpoint": None,
        "children": [
            {"name": "sda1", "type": "part", "mountpoint": "/boot/efi"},
            {"name": "sda2", "type": "part", "mountpoint": "/"},
        ],
    }


@pytest.fixture
def sd_card() -> TargetDevice:
    return TargetDevice(name="mmcblk0", size_bytes=32 * GIB, model="SD32G")


@pytest.fixture
def record() -> ProvisioningRecord:
    return ProvisioningRecord(
        hostname="pi-test",
        username="pi",
        password_hash="$6$saltsalt$hashedpassword",
        wifi_ssid="home",
        wifi_psk_hash="ab" * 32,
        locale=LocaleSettings(),
    )


# ==============================================================================
# Image Fixtures
# ==============================================================================


@pytest.fixture
def image_bytes() -> bytes:
    return b"\x00" * 4096 + b"raspios" * 512


@pytest.fixture
def xz_bytes(image_bytes) -> bytes:
    return lzma.compress(image_bytes, format=lzma.FORMAT_XZ)


# ==============================================================================
# Capability Fakes
# ==============================================================================


class FakeFetcher(Fetcher):
    """Serves listing pages and files from dicts keyed by URL."""

    def __init__(self, pages: Optional[dict] = None, files: Optional[dict] = None):
        self.pages = dict(pages or {})
        self.files = dict(files or {})
        self.requests: list[str] = []

    def fetch_text(self, url):
        self.requests.append(url)
        if url not in self.pages:
            raise DownloadError(url, "HTTP 404")
        return self.pages[url]

    def download(self, url, destination, progress=None):
        self.requests.append(url)
        if url not in self.files:
            raise DownloadError(url, "HTTP 404")
        data = self.files[url]
        Path(destination).write_bytes(data)
        if progress is not None:
            progress.set_total(len(data))
            progress.update(len(data))
        return Path(destination)


class FakeVerifier(Verifier):
    def __init__(self):
        self.calls: list[Path] = []

    def checksum(self, path):
        self.calls.append(Path(path))
        return hashlib.sha256(Path(path).read_bytes()).hexdigest()


class FakeDecompressor(Decompressor):
    """Decompresses real xz data with lzma; can be told to produce nothing."""

    def __init__(self, size: Optional[int] = None, produce_empty: bool = False):
        self.size = size
        self.produce_empty = produce_empty
        self.calls: list[tuple[Path, Path]] = []
        self.reported_totals: list[Optional[int]] = []

    def uncompressed_size(self, path):
        return self.size

    def decompress(self, source, destination, progress=None):
        self.calls.append((Path(source), Path(destination)))
        if progress is not None:
            self.reported_totals.append(progress.total)
        data = b"" if self.produce_empty else lzma.decompress(Path(source).read_bytes())
        Path(destination).write_bytes(data)
        if progress is not None:
            progress.update(len(data))


class FakeBlockWriter(BlockWriter):
    def __init__(self, status: int = 0):
        self.status = status
        self.calls: list[tuple[Path, str, int]] = []
        self.last_error = "" if status == 0 else "dd: error writing: Input/output error"

    def write(self, image_path, device_path, total_bytes, progress=None):
        self.calls.append((Path(image_path), device_path, total_bytes))
        if progress is not None and self.status == 0:
            progress.update(total_bytes)
        return self.status


class FakeMounter(Mounter):
    """In-memory mount table: mountpoint -> source device node."""

    def __init__(self, mounted: Optional[dict] = None, fail_mount=(), fail_unmount=()):
        self.mounted: Dict[str, str] = {
            str(Path(mountpoint)): source for mountpoint, source in (mounted or {}).items()
        }
        self.fail_mount = set(fail_mount)
        self.fail_unmount = {str(target) for target in fail_unmount}
        self.mount_calls: list[tuple[str, Path]] = []
        self.unmount_calls: list[str] = []

    def is_mounted(self, path):
        return str(Path(path)) in self.mounted

    def mounted_partitions(self, device_path):
        return {
            source: mountpoint
            for mountpoint, source in self.mounted.items()
            if source.startswith(device_path)
        }

    def mount(self, partition, mountpoint):
        self.mount_calls.append((partition, Path(mountpoint)))
        if partition in self.fail_mount:
            raise RuntimeError(f"mount: {mountpoint}: wrong fs type, bad option")
        self.mounted[str(Path(mountpoint))] = partition

    def unmount(self, target):
        target = str(target)
        self.unmount_calls.append(target)
        if target in self.fail_unmount:
            raise RuntimeError(f"umount: {target}: target is busy")
        self.mounted.pop(str(Path(target)), None)


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def fake_verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def fake_decompressor() -> FakeDecompressor:
    return FakeDecompressor()


@pytest.fixture
def fake_writer() -> FakeBlockWriter:
    return FakeBlockWriter()


@pytest.fixture
def fake_mounter() -> FakeMounter:
    return FakeMounter()


# Factories for tests that need fakes configured differently from the defaults


@pytest.fixture
def make_fetcher():
    return FakeFetcher


@pytest.fixture
def make_decompressor():
    return FakeDecompressor


@pytest.fixture
def make_writer():
    return FakeBlockWriter


@pytest.fixture
def make_mounter():
    return FakeMounter
