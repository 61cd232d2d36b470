"""Tests for services/catalog.py - image catalog resolution."""

import pytest

from rpi_sd_provisioner.domain import Architecture, Flavor, ImageVariant
from rpi_sd_provisioner.exceptions import ResolutionError
from rpi_sd_provisioner.services import catalog

BASE = "https://downloads.example.org"
LITE_64 = ImageVariant(Flavor.LITE, Architecture.ARM64)

INDEX_PAGE = """<html><body><pre>
<a href="../">Parent Directory</a>
<a href="raspios_lite_arm64-2023-12-11/">raspios_lite_arm64-2023-12-11/</a>
<a href="raspios_lite_arm64-2024-11-19/">raspios_lite_arm64-2024-11-19/</a>
<a href="raspios_lite_arm64-2024-07-04/">raspios_lite_arm64-2024-07-04/</a>
<a href="raspios_arm64-2025-01-01/">raspios_arm64-2025-01-01/</a>
</pre></body></html>"""

RELEASE_PAGE = """<html><body><pre>
<a href="../">Parent Directory</a>
<a href="2024-11-19-raspios-bookworm-arm64-lite.img.xz">2024-11-19-raspios-bookworm-arm64-lite.img.xz</a>
<a href="2024-11-19-raspios-bookworm-arm64-lite.img.xz.sha1">sha1</a>
<a href="2024-11-19-raspios-bookworm-arm64-lite.img.xz.sha256">sha256</a>
<a href="2024-11-19-raspios-bookworm-arm64-lite.img.xz.sig">sig</a>
</pre></body></html>"""

INDEX_URL = f"{BASE}/raspios_lite_arm64/images/"
RELEASE_URL = f"{BASE}/raspios_lite_arm64/images/raspios_lite_arm64-2024-11-19/"


@pytest.fixture
def live_fetcher(make_fetcher):
    return make_fetcher(pages={INDEX_URL: INDEX_PAGE, RELEASE_URL: RELEASE_PAGE})


class TestPinnedCatalog:
    def test_covers_every_variant(self):
        assert set(catalog.PINNED_CATALOG) == set(ImageVariant.all())

    def test_no_empty_filenames(self):
        for source in catalog.PINNED_CATALOG.values():
            assert source.filename.endswith(".img.xz")
            assert source.checksum_filename == f"{source.filename}.sha256"
            assert source.pinned

    def test_lite_arm64_entry(self):
        source = catalog.PINNED_CATALOG[LITE_64]
        assert source.image_url == (
            "https://downloads.raspberrypi.org/raspios_lite_arm64/images/"
            "raspios_lite_arm64-2024-07-04/2024-07-04-raspios-bookworm-arm64-lite.img.xz"
        )
        assert source.decompressed_filename == "2024-07-04-raspios-bookworm-arm64-lite.img"

    def test_full_armhf_entry(self):
        source = catalog.PINNED_CATALOG[ImageVariant(Flavor.FULL, Architecture.ARMHF)]
        assert source.filename == "2024-07-04-raspios-bookworm-armhf.img.xz"
        assert "/raspios_armhf/images/raspios_armhf-2024-07-04/" in source.base_url

    def test_incomplete_catalog_is_rejected(self):
        partial = dict(catalog.PINNED_CATALOG)
        del partial[LITE_64]
        with pytest.raises(ResolutionError, match="lite/64-bit"):
            catalog.validate_catalog(partial)


class TestListingParsing:
    def test_latest_release_dir(self):
        assert (
            catalog.latest_release_dir(INDEX_PAGE, "raspios_lite_arm64")
            == "raspios_lite_arm64-2024-11-19"
        )

    def test_other_variants_ignored(self):
        assert catalog.latest_release_dir(INDEX_PAGE, "raspios_arm64") == "raspios_arm64-2025-01-01"

    def test_no_release(self):
        assert catalog.latest_release_dir("<html></html>", "raspios_lite_arm64") is None

    def test_find_image_filename(self):
        assert (
            catalog.find_image_filename(RELEASE_PAGE)
            == "2024-11-19-raspios-bookworm-arm64-lite.img.xz"
        )

    def test_ambiguous_image(self):
        page = RELEASE_PAGE + '<a href="other.img.xz">other.img.xz</a>'
        assert catalog.find_image_filename(page) is None

    def test_no_image(self):
        assert catalog.find_image_filename('<a href="readme.txt">') is None


class TestCatalogResolver:
    def test_live_resolution(self, live_fetcher):
        resolver = catalog.CatalogResolver(live_fetcher, BASE, probe=lambda: True)

        source = resolver.resolve(LITE_64)

        assert source.filename == "2024-11-19-raspios-bookworm-arm64-lite.img.xz"
        assert source.base_url == RELEASE_URL
        assert source.checksum_url == f"{RELEASE_URL}{source.filename}.sha256"
        assert not source.pinned

    def test_offline_uses_pinned(self, live_fetcher):
        resolver = catalog.CatalogResolver(live_fetcher, BASE, probe=lambda: False)

        source = resolver.resolve(LITE_64)

        assert source.pinned
        assert source.filename == "2024-07-04-raspios-bookworm-arm64-lite.img.xz"
        assert source.base_url.startswith(BASE)
        assert live_fetcher.requests == []

    def test_listing_error_uses_pinned(self, fake_fetcher):
        resolver = catalog.CatalogResolver(fake_fetcher, BASE, probe=lambda: True)
        assert resolver.resolve(LITE_64).pinned

    def test_ambiguous_listing_uses_pinned(self, live_fetcher):
        live_fetcher.pages[RELEASE_URL] = RELEASE_PAGE + '<a href="x.img.xz">x</a>'
        resolver = catalog.CatalogResolver(live_fetcher, BASE, probe=lambda: True)
        assert resolver.resolve(LITE_64).pinned

    def test_probe_runs_once(self, live_fetcher):
        calls = []

        def probe():
            calls.append(1)
            return False

        resolver = catalog.CatalogResolver(live_fetcher, BASE, probe=probe)
        resolver.resolve(LITE_64)
        resolver.resolve(ImageVariant(Flavor.FULL, Architecture.ARM64))
        assert len(calls) == 1

    def test_missing_pinned_entry_fails(self, fake_fetcher):
        resolver = catalog.CatalogResolver(fake_fetcher, BASE, probe=lambda: False, pinned={})
        with pytest.raises(ResolutionError):
            resolver.resolve(LITE_64)

    @pytest.mark.parametrize("variant", ImageVariant.all())
    def test_every_variant_resolves_offline(self, variant, fake_fetcher):
        resolver = catalog.CatalogResolver(fake_fetcher, probe=lambda: False)
        assert resolver.resolve(variant).filename

    def test_fetch_catalog(self, live_fetcher):
        resolver = catalog.CatalogResolver(live_fetcher, BASE, probe=lambda: True)

        result = resolver.fetch_catalog()

        assert set(result) == set(ImageVariant.all())
        assert not result[LITE_64].pinned
        assert result[ImageVariant(Flavor.FULL, Architecture.ARMHF)].pinned
