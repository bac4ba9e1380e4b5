"""HTTP downloads for the payload release assets and bootstrap tools.

Files land in the download cache under their final name only once they are
complete: data is streamed to ``<name>.part`` and renamed at the end, so a
cached file is always a whole one and is reused by later builds.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Callable, Optional

import aiohttp

from landscape_mini.domain import BuildConfig
from landscape_mini.exceptions import DownloadError
from landscape_mini.logging import LoggerFactory, ThrottledLogger


log = LoggerFactory.for_download()

STATIC_ASSETS_NAME = "static.zip"
CHUNK_SIZE = 1024 * 1024
APK_TOOLS_PATTERN = re.compile(r'apk-tools-static-[0-9][^"<>]*\.apk')


class DownloadClient:
    """Small aiohttp client that streams files to disk."""

    def __init__(self, timeout_seconds: int = 1800, chunk_size: int = CHUNK_SIZE):
        """Initialize download client.

        Args:
            timeout_seconds: Total timeout per request
            chunk_size: Bytes read per chunk while streaming
        """
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.chunk_size = chunk_size
        self.progress = ThrottledLogger(log.bind(tags=["download", "progress"]), interval_seconds=5.0)

    async def fetch_text(self, url: str) -> str:
        """GET a URL and return its body as text.

        Raises:
            DownloadError: On a network error or non-200 status
        """
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise DownloadError(url, f"HTTP {resp.status}")
                    return await resp.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.error(f"Network error fetching {url}: {e}")
                raise DownloadError(url, f"Network error: {e}") from e

    async def download(
        self,
        url: str,
        dest: Path,
        progress_callback: Optional[Callable[[int, Optional[int]], None]] = None,
    ) -> Path:
        """Stream url to dest via a temporary ``.part`` file.

        Args:
            url: Source URL (redirects are followed)
            dest: Final file path
            progress_callback: Optional callback(bytes_written, total_bytes)

        Raises:
            DownloadError: On a network error or non-200 status; the partial
                file is removed
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        written = 0

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise DownloadError(url, f"HTTP {resp.status}")
                    total = resp.content_length
                    with open(part, "wb") as handle:
                        async for chunk in resp.content.iter_chunked(self.chunk_size):
                            handle.write(chunk)
                            written += len(chunk)
                            if progress_callback:
                                progress_callback(written, total)
                            self.progress.debug(
                                str(dest), f"{dest.name}: {written // (1024 * 1024)} MB received"
                            )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                part.unlink(missing_ok=True)
                log.error(f"Network error downloading {url}: {e}")
                raise DownloadError(url, f"Network error: {e}") from e
            except BaseException:
                part.unlink(missing_ok=True)
                raise

        part.replace(dest)
        log.info(f"Downloaded {dest.name} ({written} bytes)")
        return dest


async def fetch_payload(config: BuildConfig, download_dir: Path, client: DownloadClient) -> list[Path]:
    """Download the payload binary and static assets unless already cached."""
    results = []
    for name in (config.payload_binary_name, STATIC_ASSETS_NAME):
        dest = download_dir / name
        if dest.is_file():
            log.info(f"[OK] {name} already downloaded")
        else:
            log.info(f"[DOWNLOADING] {name}")
            await client.download(f"{config.download_base}/{name}", dest)
        results.append(dest)
    binary = download_dir / config.payload_binary_name
    binary.chmod(0o755)
    return results


def download_payload(
    config: BuildConfig,
    download_dir: Path,
    client: Optional[DownloadClient] = None,
) -> list[Path]:
    """Blocking wrapper around fetch_payload()."""
    download_dir.mkdir(parents=True, exist_ok=True)
    log.info(f"Download source: {config.download_base}")
    return asyncio.run(fetch_payload(config, download_dir, client or DownloadClient()))


def find_apk_tools_package(listing: str) -> Optional[str]:
    """Name of the apk-tools-static package in a repository index page."""
    match = APK_TOOLS_PATTERN.search(listing)
    return match.group(0) if match else None


async def fetch_apk_tools(config: BuildConfig, dest: Path, client: DownloadClient) -> Path:
    """Download the apk-tools-static package for the configured release.

    Raises:
        DownloadError: If the index has no apk-tools-static package or a
            request fails
    """
    index_url = f"{config.alpine_mirror}/{config.alpine_release}/main/x86_64"
    listing = await client.fetch_text(f"{index_url}/")
    package = find_apk_tools_package(listing)
    if not package:
        raise DownloadError(index_url, "no apk-tools-static package in the repository index")
    log.info(f"Downloading {package}")
    return await client.download(f"{index_url}/{package}", dest)


def download_apk_tools(
    config: BuildConfig,
    dest: Path,
    client: Optional[DownloadClient] = None,
) -> Path:
    """Blocking wrapper around fetch_apk_tools()."""
    return asyncio.run(fetch_apk_tools(config, dest, client or DownloadClient()))
