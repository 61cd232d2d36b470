"""Image catalog: which Raspberry Pi OS release to flash for a variant.

The vendor publishes one directory per variant, each holding dated release
subdirectories:

    https://downloads.raspberrypi.org/raspios_lite_arm64/images/
        raspios_lite_arm64-2024-03-15/
        raspios_lite_arm64-2024-07-04/
            2024-07-04-raspios-bookworm-arm64-lite.img.xz
            2024-07-04-raspios-bookworm-arm64-lite.img.xz.sha256

The newest dated directory wins. Whenever the network is down or a listing
cannot be parsed unambiguously, the pinned release below is used instead.
"""

from __future__ import annotations

import re
from typing import Callable, Mapping, Optional

from rpi_sd_provisioner.domain import Architecture, Flavor, ImageSource, ImageVariant
from rpi_sd_provisioner.exceptions import DownloadError, ResolutionError
from rpi_sd_provisioner.logging import LoggerFactory
from rpi_sd_provisioner.storage.capabilities import Fetcher

log = LoggerFactory.for_catalog()

DEFAULT_BASE_URL = "https://downloads.raspberrypi.org"
IMAGE_SUFFIX = ".img.xz"
CHECKSUM_SUFFIX = ".sha256"

PINNED_RELEASE = "2024-07-04"
_PINNED_FILENAMES = {
    ImageVariant(Flavor.LITE, Architecture.ARM64): "2024-07-04-raspios-bookworm-arm64-lite.img.xz",
    ImageVariant(Flavor.FULL, Architecture.ARM64): "2024-07-04-raspios-bookworm-arm64.img.xz",
    ImageVariant(Flavor.LITE, Architecture.ARMHF): "2024-07-04-raspios-bookworm-armhf-lite.img.xz",
    ImageVariant(Flavor.FULL, Architecture.ARMHF): "2024-07-04-raspios-bookworm-armhf.img.xz",
}

_HREF_PATTERN = re.compile(r"""href\s*=\s*["']([^"']+)["']""", re.IGNORECASE)


def release_base_url(base_url: str, variant: ImageVariant, release_dir: str) -> str:
    release_dir = release_dir.strip("/")
    return f"{base_url.rstrip('/')}/{variant.directory_name}/images/{release_dir}/"


def make_source(base_url: str, filename: str, pinned: bool = False) -> ImageSource:
    return ImageSource(
        base_url=base_url,
        filename=filename,
        checksum_filename=f"{filename}{CHECKSUM_SUFFIX}",
        pinned=pinned,
    )


def build_pinned_catalog(base_url: str = DEFAULT_BASE_URL) -> dict[ImageVariant, ImageSource]:
    return {
        variant: make_source(
            release_base_url(
                base_url, variant, f"{variant.directory_name}-{PINNED_RELEASE}"
            ),
            filename,
            pinned=True,
        )
        for variant, filename in _PINNED_FILENAMES.items()
    }


def validate_catalog(catalog: Mapping[ImageVariant, ImageSource]) -> None:
    """Require one non-empty source for every flavour x architecture pair."""
    missing = [variant.label for variant in ImageVariant.all() if variant not in catalog]
    if missing:
        raise ResolutionError(f"Image catalog is incomplete; missing {', '.join(missing)}")
    empty = [variant.label for variant, source in catalog.items() if not source.filename]
    if empty:
        raise ResolutionError(f"Image catalog has empty filenames for {', '.join(empty)}")


PINNED_CATALOG = build_pinned_catalog()
validate_catalog(PINNED_CATALOG)


def parse_hrefs(listing: str) -> list[str]:
    return _HREF_PATTERN.findall(listing)


def latest_release_dir(listing: str, directory_name: str) -> Optional[str]:
    """Newest ``<directory_name>-YYYY-MM-DD`` entry of a listing page."""
    pattern = re.compile(rf"^{re.escape(directory_name)}-(\d{{4}}-\d{{2}}-\d{{2}})/?$")
    releases: dict[str, str] = {}
    for href in parse_hrefs(listing):
        name = href.rstrip("/").rsplit("/", 1)[-1]
        match = pattern.match(name)
        if match:
            releases[match.group(1)] = name
    if not releases:
        return None
    return releases[max(releases)]


def find_image_filename(listing: str) -> Optional[str]:
    """The single ``*.img.xz`` in a release listing, or None if not exactly one."""
    names = {
        href.rsplit("/", 1)[-1]
        for href in parse_hrefs(listing)
        if href.endswith(IMAGE_SUFFIX)
    }
    if len(names) != 1:
        return None
    return names.pop()


class CatalogResolver:
    """Resolve image variants live, falling back to the pinned catalog."""

    def __init__(
        self,
        fetcher: Fetcher,
        base_url: str = DEFAULT_BASE_URL,
        probe: Optional[Callable[[], bool]] = None,
        pinned: Optional[Mapping[ImageVariant, ImageSource]] = None,
    ):
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.probe = probe
        self.pinned = build_pinned_catalog(self.base_url) if pinned is None else pinned
        self._network_available: Optional[bool] = None

    def network_available(self) -> bool:
        """Probe once per resolver; later calls reuse the answer."""
        if self._network_available is None:
            self._network_available = True if self.probe is None else bool(self.probe())
        return self._network_available

    def resolve(self, variant: ImageVariant) -> ImageSource:
        """Return the image source for ``variant``.

        Raises:
            ResolutionError: If neither the live listing nor the pinned
                catalog yields a source
        """
        source = None
        if self.network_available():
            try:
                source = self.resolve_live(variant)
            except DownloadError as error:
                log.warning(f"Image listing for {variant.label} unavailable: {error}")
        else:
            log.warning("Network unavailable; skipping live image lookup")

        if source is not None:
            log.info(f"Resolved {variant.label} to {source.filename}")
            return source

        pinned = self.pinned.get(variant)
        if pinned is None or not pinned.filename:
            raise ResolutionError(f"No image source available for {variant.label}")
        log.warning(f"Using pinned image for {variant.label}: {pinned.filename}")
        return pinned

    def resolve_live(self, variant: ImageVariant) -> Optional[ImageSource]:
        """Look the variant up in the vendor listing.

        Returns None when the listing has no dated release or the newest
        release does not hold exactly one image.
        """
        index_url = f"{self.base_url}/{variant.directory_name}/images/"
        release_dir = latest_release_dir(
            self.fetcher.fetch_text(index_url), variant.directory_name
        )
        if release_dir is None:
            log.warning(f"No dated release found at {index_url}")
            return None
        release_url = release_base_url(self.base_url, variant, release_dir)
        filename = find_image_filename(self.fetcher.fetch_text(release_url))
        if filename is None:
            log.warning(f"Expected exactly one {IMAGE_SUFFIX} image at {release_url}")
            return None
        return make_source(release_url, filename)

    def fetch_catalog(self) -> dict[ImageVariant, ImageSource]:
        """Resolve every variant; a partial catalog is a resolution failure."""
        catalog = {variant: self.resolve(variant) for variant in ImageVariant.all()}
        validate_catalog(catalog)
        return catalog
