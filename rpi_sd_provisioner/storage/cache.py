"""Local image cache and the download / verify / decompress pipeline.

The cache directory is flat and keyed by filename: at most one decompressed
image per filename stem. Compressed downloads and their checksum artifacts
are transient; they are recorded in the run's ``CleanupLedger`` while they
exist and removed once the image has been decompressed.

Pipeline for a cache miss:

    1. Download ``<filename>.xz`` and ``<filename>.xz.sha256``
    2. Compare sha256 of the download with the checksum artifact
    3. Decompress into ``<filename>`` with progress, then drop the artifacts

A re-run after any failure starts again from step 1. ``ImageCache.state``
records how far the last run got.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from rpi_sd_provisioner.domain import CachedImage, CacheState, ImageSource
from rpi_sd_provisioner.exceptions import (
    ChecksumMismatchError,
    DecompressionError,
    DownloadError,
    FetchError,
    FetchReason,
    ImageNotFoundError,
)
from rpi_sd_provisioner.logging import LoggerFactory

from .capabilities import Decompressor, Fetcher, Verifier
from .checksum import parse_checksum_artifact
from .cleanup import CleanupLedger
from .compression import estimate_uncompressed_size, is_xz_compressed
from .progress import ProgressFactory, null_progress

log = LoggerFactory.for_fetch()


def _non_empty(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


class ImageCache:
    """Cache & fetch pipeline for one cache directory."""

    def __init__(
        self,
        cache_dir: Path,
        fetcher: Fetcher,
        verifier: Verifier,
        decompressor: Decompressor,
        ledger: CleanupLedger,
        progress_factory: ProgressFactory = null_progress,
    ):
        self.cache_dir = Path(cache_dir)
        self.fetcher = fetcher
        self.verifier = verifier
        self.decompressor = decompressor
        self.ledger = ledger
        self.progress_factory = progress_factory
        self.state = CacheState.ABSENT

    def cache_path(self, source: ImageSource) -> Path:
        return self.cache_dir / source.decompressed_filename

    def lookup(self, source: ImageSource) -> CachedImage:
        """Report what the cache currently holds for ``source``."""
        target = self.cache_path(source)
        if _non_empty(target):
            return CachedImage(target, CacheState.DECOMPRESSED)
        compressed = self.cache_dir / source.filename
        if source.is_compressed and _non_empty(compressed):
            return CachedImage(compressed, CacheState.COMPRESSED_UNVERIFIED)
        return CachedImage(target, CacheState.ABSENT)

    def ensure_local_image(self, source: ImageSource) -> Path:
        """Return the path of the decompressed image, fetching it if needed.

        Raises:
            DownloadError: If either artifact cannot be downloaded
            ChecksumMismatchError: If the download does not match its checksum
            DecompressionError: If decompression fails or produces nothing
        """
        cached = self.lookup(source)
        self._enter(cached.state, cached.path)
        if cached.is_ready:
            log.info(f"Using cached image {cached.path}")
            return cached.path

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise FetchError(
                FetchReason.DOWNLOAD_FAILED,
                f"Cannot create cache directory {self.cache_dir}: {error}",
                path=str(self.cache_dir),
            ) from error

        artifact = self.cache_dir / source.filename
        checksum_artifact = self.cache_dir / source.checksum_filename
        self.ledger.track_file(artifact)
        self.ledger.track_file(checksum_artifact)

        log.info(f"Downloading {source.image_url}")
        self.fetcher.download(source.checksum_url, checksum_artifact)
        with self.progress_factory(f"Downloading {source.filename}", None) as progress:
            self.fetcher.download(source.image_url, artifact, progress)
        self._enter(CacheState.COMPRESSED_UNVERIFIED, artifact)

        self._verify(artifact, checksum_artifact, source)

        target = self.cache_path(source)
        if source.is_compressed:
            self._enter(CacheState.COMPRESSED_VERIFIED, artifact)
            self._decompress(artifact, target)
            self._discard(artifact)
        else:
            self.ledger.release_file(artifact)
        self._enter(CacheState.DECOMPRESSED, target)
        self._discard(checksum_artifact)
        log.success(f"Image ready at {target}")
        return target

    def prepare_local_file(self, image_path: Path) -> Path:
        """Make an operator-supplied image writable.

        Raw images are used where they are. ``.xz`` images are decompressed
        into the cache; the operator's archive is left untouched.
        """
        image_path = Path(image_path).expanduser()
        if not _non_empty(image_path):
            raise ImageNotFoundError(str(image_path))
        if not is_xz_compressed(image_path):
            log.info(f"Using local image {image_path}")
            return image_path

        target = self.cache_dir / image_path.name[: -len(".xz")]
        if _non_empty(target):
            log.info(f"Using cached image {target}")
            return target
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise DecompressionError(str(image_path), str(error)) from error
        self._decompress(image_path, target)
        log.success(f"Image ready at {target}")
        return target

    def _enter(self, state: CacheState, path: Path) -> None:
        if state is not self.state:
            log.debug(f"Cache state {self.state.value} -> {state.value} for {path.name}")
        self.state = state

    def _verify(self, artifact: Path, checksum_artifact: Path, source: ImageSource) -> None:
        try:
            expected = parse_checksum_artifact(
                checksum_artifact.read_text(encoding="utf-8", errors="replace"),
                source.filename,
            )
        except (OSError, ValueError) as error:
            raise DownloadError(source.checksum_url, str(error)) from error
        try:
            actual = self.verifier.checksum(artifact)
        except (RuntimeError, OSError) as error:
            raise FetchError(
                FetchReason.CHECKSUM_MISMATCH,
                f"Could not compute checksum of {artifact}: {error}",
                path=str(artifact),
            ) from error
        if actual.lower() != expected.lower():
            raise ChecksumMismatchError(str(artifact), expected, actual)
        log.info(f"Checksum verified for {artifact.name}")

    def _decompress(self, source: Path, target: Path) -> None:
        total: Optional[int] = self.decompressor.uncompressed_size(source)
        if total is None:
            total = estimate_uncompressed_size(source)
            log.debug(f"Uncompressed size unknown; estimating {total} bytes")
        self.ledger.track_file(target)
        try:
            with self.progress_factory(f"Decompressing {source.name}", total) as progress:
                self.decompressor.decompress(source, target, progress)
        except (RuntimeError, OSError) as error:
            raise DecompressionError(str(source), str(error)) from error
        if not _non_empty(target):
            raise DecompressionError(str(source), f"{target} is missing or empty")
        # Promoted to a cache entry; no longer transient
        self.ledger.release_file(target)

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            log.warning(f"Could not remove {path}: {error}")
            return
        self.ledger.release_file(path)
