"""Capability interfaces for the external tools the pipeline drives.

Each capability has one production implementation that shells out to the
platform tool (or talks HTTP) and can be swapped for a fake in tests:

    Fetcher       -> services.http.HttpFetcher          (aiohttp)
    Verifier      -> storage.checksum.Sha256Verifier    (sha256sum)
    Decompressor  -> storage.compression.XzDecompressor (xz)
    BlockWriter   -> storage.writer.DdBlockWriter       (dd)
    Mounter       -> storage.mount.SystemMounter        (mount/umount)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .progress import ProgressReporter


class Fetcher(ABC):
    """Returns bytes from a URL or fails."""

    @abstractmethod
    def fetch_text(self, url: str) -> str:
        """Fetch a small text resource (listing page, checksum artifact)."""
        ...

    @abstractmethod
    def download(
        self,
        url: str,
        destination: Path,
        progress: Optional[ProgressReporter] = None,
    ) -> Path:
        """Stream ``url`` into ``destination``; raise DownloadError on failure."""
        ...


class Verifier(ABC):
    @abstractmethod
    def checksum(self, path: Path) -> str:
        """Return the lowercase hex digest of ``path``."""
        ...


class Decompressor(ABC):
    @abstractmethod
    def uncompressed_size(self, path: Path) -> Optional[int]:
        """Size recorded in the archive metadata, or None when unavailable."""
        ...

    @abstractmethod
    def decompress(
        self,
        source: Path,
        destination: Path,
        progress: Optional[ProgressReporter] = None,
    ) -> None:
        """Stream-decompress ``source`` into ``destination``."""
        ...


class BlockWriter(ABC):
    @abstractmethod
    def write(
        self,
        image_path: Path,
        device_path: str,
        total_bytes: int,
        progress: Optional[ProgressReporter] = None,
    ) -> int:
        """Copy the image onto the device and return the copy's exit status."""
        ...


class Mounter(ABC):
    @abstractmethod
    def is_mounted(self, path: Path) -> bool:
        ...

    @abstractmethod
    def mounted_partitions(self, device_path: str) -> dict[str, str]:
        """Map of partition device node -> mountpoint for ``device_path``."""
        ...

    @abstractmethod
    def mount(self, partition: str, mountpoint: Path) -> None:
        """Mount ``partition``; raise RuntimeError on failure."""
        ...

    @abstractmethod
    def unmount(self, target: str | Path) -> None:
        """Unmount a mountpoint or device node; raise RuntimeError on failure."""
        ...
