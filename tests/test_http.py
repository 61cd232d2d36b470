"""Tests for services/http.py - the aiohttp-backed fetcher."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from aiohttp import web

from rpi_sd_provisioner.exceptions import DownloadError
from rpi_sd_provisioner.services.http import HttpFetcher
from rpi_sd_provisioner.storage.progress import ProgressReporter

PAYLOAD = b"\x00\x01" * 300000


@pytest_asyncio.fixture
async def image_server(aiohttp_server):
    async def listing(request):
        return web.Response(text='<a href="raspios_lite_arm64-2024-07-04/">')

    async def image(request):
        return web.Response(body=PAYLOAD)

    async def missing(request):
        return web.Response(status=404, text="Not Found")

    app = web.Application()
    app.router.add_get("/images/", listing)
    app.router.add_get("/image.img.xz", image)
    app.router.add_get("/missing", missing)
    return await aiohttp_server(app)


class TestFetchText:
    @pytest.mark.asyncio
    async def test_returns_body(self, image_server):
        text = await HttpFetcher().fetch_text_async(str(image_server.make_url("/images/")))
        assert "raspios_lite_arm64-2024-07-04/" in text

    @pytest.mark.asyncio
    async def test_http_error(self, image_server):
        url = str(image_server.make_url("/missing"))
        with pytest.raises(DownloadError, match="HTTP 404"):
            await HttpFetcher().fetch_text_async(url)

    @pytest.mark.asyncio
    async def test_connection_error(self, unused_tcp_port):
        with pytest.raises(DownloadError):
            await HttpFetcher(timeout_seconds=2).fetch_text_async(
                f"http://127.0.0.1:{unused_tcp_port}/"
            )


class TestDownload:
    @pytest.mark.asyncio
    async def test_streams_to_file_with_progress(self, image_server, tmp_path):
        destination = tmp_path / "image.img.xz"
        reporter = ProgressReporter("Downloading")

        result = await HttpFetcher().download_async(
            str(image_server.make_url("/image.img.xz")), destination, reporter
        )

        assert result == destination
        assert destination.read_bytes() == PAYLOAD
        assert reporter.total == len(PAYLOAD)
        assert reporter.completed == len(PAYLOAD)

    @pytest.mark.asyncio
    async def test_http_error(self, image_server, tmp_path):
        with pytest.raises(DownloadError, match="HTTP 404"):
            await HttpFetcher().download_async(
                str(image_server.make_url("/missing")), tmp_path / "x"
            )
        assert not (tmp_path / "x").exists()

    @pytest.mark.asyncio
    async def test_unwritable_destination(self, image_server, tmp_path):
        with pytest.raises(DownloadError, match="cannot write"):
            await HttpFetcher().download_async(
                str(image_server.make_url("/image.img.xz")),
                tmp_path / "no-such-dir" / "image.img.xz",
            )


class TestSyncWrappers:
    def test_fetch_text_runs_coroutine(self):
        fetcher = HttpFetcher()
        with patch.object(
            HttpFetcher, "fetch_text_async", AsyncMock(return_value="listing")
        ) as mock_fetch:
            assert fetcher.fetch_text("https://example.org/") == "listing"
        mock_fetch.assert_awaited_once_with("https://example.org/")

    def test_download_runs_coroutine(self, tmp_path):
        fetcher = HttpFetcher()
        destination = tmp_path / "a"
        with patch.object(
            HttpFetcher, "download_async", AsyncMock(return_value=destination)
        ) as mock_download:
            assert fetcher.download("https://example.org/a", destination) == destination
        mock_download.assert_awaited_once_with("https://example.org/a", destination, None)

    def test_timeout_configuration(self):
        fetcher = HttpFetcher(timeout_seconds=30)
        assert fetcher.timeout.total is None
        assert fetcher.timeout.connect == 30
        assert fetcher.timeout.sock_read == 30
