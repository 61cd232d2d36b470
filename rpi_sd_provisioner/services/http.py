"""HTTP client for the image listing, checksum and image downloads.

The pipeline is synchronous; each public method drives its coroutine with
``asyncio.run`` so the aiohttp session lives exactly as long as one request.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import aiohttp

from rpi_sd_provisioner.exceptions import DownloadError
from rpi_sd_provisioner.logging import get_logger
from rpi_sd_provisioner.storage.capabilities import Fetcher
from rpi_sd_provisioner.storage.progress import ProgressReporter

log = get_logger(source="http", tags=["fetch", "network"])

CHUNK_SIZE = 1024 * 1024


class HttpFetcher(Fetcher):
    """Fetcher backed by aiohttp."""

    def __init__(self, timeout_seconds: float = 60):
        # Large images take far longer than the timeout; only bound connect and reads
        self.timeout = aiohttp.ClientTimeout(
            total=None, connect=timeout_seconds, sock_read=timeout_seconds
        )

    async def fetch_text_async(self, url: str) -> str:
        """Fetch a small text resource.

        Raises:
            DownloadError: On HTTP errors, network errors or timeouts
        """
        log.debug(f"GET {url}")
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise DownloadError(url, f"HTTP {resp.status}")
                    return await resp.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.error(f"Network error fetching {url}: {e}")
                raise DownloadError(url, str(e) or type(e).__name__) from e

    async def download_async(
        self,
        url: str,
        destination: Path,
        progress: Optional[ProgressReporter] = None,
    ) -> Path:
        """Stream ``url`` into ``destination`` in 1 MiB chunks.

        Raises:
            DownloadError: On HTTP errors, network errors, timeouts or local
                write failures
        """
        destination = Path(destination)
        log.debug(f"GET {url} -> {destination}")
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise DownloadError(url, f"HTTP {resp.status}")
                    if progress is not None and resp.content_length:
                        progress.set_total(resp.content_length)
                    with open(destination, "wb") as output:
                        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                            output.write(chunk)
                            if progress is not None:
                                progress.advance(len(chunk))
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.error(f"Network error downloading {url}: {e}")
                raise DownloadError(url, str(e) or type(e).__name__) from e
            except OSError as e:
                raise DownloadError(url, f"cannot write {destination}: {e}") from e
        log.debug(f"Downloaded {url} ({destination.stat().st_size} bytes)")
        return destination

    def fetch_text(self, url: str) -> str:
        return asyncio.run(self.fetch_text_async(url))

    def download(
        self,
        url: str,
        destination: Path,
        progress: Optional[ProgressReporter] = None,
    ) -> Path:
        return asyncio.run(self.download_async(url, destination, progress))
