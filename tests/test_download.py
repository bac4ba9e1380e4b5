"""Tests for build/download.py - aiohttp downloads into the cache."""

from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest

from landscape_mini.build import download
from landscape_mini.domain import BaseSystem, BuildConfig
from landscape_mini.exceptions import DownloadError


INDEX_PAGE = """<html><body>
<a href="apk-tools-2.14.6-r3.apk">apk-tools-2.14.6-r3.apk</a>
<a href="apk-tools-doc-2.14.6-r3.apk">apk-tools-doc-2.14.6-r3.apk</a>
<a href="apk-tools-static-2.14.6-r3.apk">apk-tools-static-2.14.6-r3.apk</a>
</body></html>"""


def _mock_client_session(status=200, chunks=(), text="", error=None):
    """Build an aiohttp.ClientSession stand-in returning one response."""

    async def iter_chunked(size):
        for chunk in chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    response = Mock()
    response.status = status
    response.content_length = None
    response.content.iter_chunked = iter_chunked
    response.text = AsyncMock(return_value=text)

    response_cm = AsyncMock()
    response_cm.__aenter__.return_value = response
    response_cm.__aexit__.return_value = False

    session = Mock()
    if error is not None:
        session.get = Mock(side_effect=error)
    else:
        session.get = Mock(return_value=response_cm)

    session_cm = AsyncMock()
    session_cm.__aenter__.return_value = session
    session_cm.__aexit__.return_value = False
    return session_cm, session


class TestDownloadClient:
    """Tests for DownloadClient."""

    @pytest.mark.asyncio
    async def test_download_renames_part_file(self, tmp_path):
        session_cm, session = _mock_client_session(chunks=[b"abc", b"def"])
        dest = tmp_path / "cache" / "static.zip"
        progress = []

        with patch(
            "landscape_mini.build.download.aiohttp.ClientSession", return_value=session_cm
        ):
            client = download.DownloadClient()
            result = await client.download(
                "https://example.com/static.zip", dest, lambda done, total: progress.append(done)
            )

        assert result == dest
        assert dest.read_bytes() == b"abcdef"
        assert not (tmp_path / "cache" / "static.zip.part").exists()
        assert progress == [3, 6]
        session.get.assert_called_once_with("https://example.com/static.zip")

    @pytest.mark.asyncio
    async def test_http_error_leaves_nothing(self, tmp_path):
        session_cm, _ = _mock_client_session(status=404)
        dest = tmp_path / "static.zip"

        with patch(
            "landscape_mini.build.download.aiohttp.ClientSession", return_value=session_cm
        ):
            with pytest.raises(DownloadError, match="HTTP 404"):
                await download.DownloadClient().download("https://example.com/static.zip", dest)

        assert not dest.exists()
        assert not (tmp_path / "static.zip.part").exists()

    @pytest.mark.asyncio
    async def test_interrupted_stream_removes_part(self, tmp_path):
        session_cm, _ = _mock_client_session(
            chunks=[b"abc", aiohttp.ClientPayloadError("connection reset")]
        )
        dest = tmp_path / "landscape-webserver-x86_64"

        with patch(
            "landscape_mini.build.download.aiohttp.ClientSession", return_value=session_cm
        ):
            with pytest.raises(DownloadError, match="connection reset"):
                await download.DownloadClient().download("https://example.com/bin", dest)

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_connection_error(self, tmp_path):
        session_cm, _ = _mock_client_session(error=aiohttp.ClientConnectionError("refused"))

        with patch(
            "landscape_mini.build.download.aiohttp.ClientSession", return_value=session_cm
        ):
            with pytest.raises(DownloadError, match="Network error"):
                await download.DownloadClient().download("https://example.com/x", tmp_path / "x")

    @pytest.mark.asyncio
    async def test_fetch_text(self):
        session_cm, _ = _mock_client_session(text=INDEX_PAGE)

        with patch(
            "landscape_mini.build.download.aiohttp.ClientSession", return_value=session_cm
        ):
            text = await download.DownloadClient().fetch_text("https://mirror/v3.21/main/x86_64/")

        assert "apk-tools-static" in text


class TestPayload:
    """Tests for fetch_payload() and download_payload()."""

    def _client(self):
        client = Mock()

        async def fake_download(url, dest, progress_callback=None):
            dest.write_bytes(b"payload")
            return dest

        client.download = AsyncMock(side_effect=fake_download)
        return client

    def test_downloads_binary_and_assets(self, tmp_path):
        config = BuildConfig(version="v0.8.1")
        client = self._client()

        paths = download.download_payload(config, tmp_path / "downloads", client)

        urls = [c.args[0] for c in client.download.call_args_list]
        base = "https://github.com/ThisSeanZhang/landscape/releases/download/v0.8.1"
        assert urls == [f"{base}/landscape-webserver-x86_64", f"{base}/static.zip"]
        assert [p.name for p in paths] == ["landscape-webserver-x86_64", "static.zip"]
        assert paths[0].stat().st_mode & 0o755 == 0o755

    def test_cached_files_reused(self, tmp_path):
        config = BuildConfig(base_system=BaseSystem.ALPINE)
        downloads = tmp_path / "downloads"
        downloads.mkdir()
        (downloads / "landscape-webserver-x86_64-musl").write_bytes(b"cached")
        client = self._client()

        download.download_payload(config, downloads, client)

        urls = [c.args[0] for c in client.download.call_args_list]
        assert urls == [f"{config.download_base}/static.zip"]
        assert (downloads / "landscape-webserver-x86_64-musl").read_bytes() == b"cached"


class TestApkTools:
    """Tests for the apk-tools-static lookup."""

    def test_find_package(self):
        assert download.find_apk_tools_package(INDEX_PAGE) == "apk-tools-static-2.14.6-r3.apk"

    def test_find_package_missing(self):
        assert download.find_apk_tools_package("<html></html>") is None

    def test_download_apk_tools(self, tmp_path):
        client = Mock()
        client.fetch_text = AsyncMock(return_value=INDEX_PAGE)
        client.download = AsyncMock(return_value=tmp_path / "apk-tools-static.apk")
        config = BuildConfig(base_system=BaseSystem.ALPINE)

        download.download_apk_tools(config, tmp_path / "apk-tools-static.apk", client)

        index = "https://dl-cdn.alpinelinux.org/alpine/v3.21/main/x86_64"
        client.fetch_text.assert_awaited_once_with(f"{index}/")
        client.download.assert_awaited_once_with(
            f"{index}/apk-tools-static-2.14.6-r3.apk", tmp_path / "apk-tools-static.apk"
        )

    def test_no_package_in_index(self, tmp_path):
        client = Mock()
        client.fetch_text = AsyncMock(return_value="<html></html>")

        with pytest.raises(DownloadError, match="no apk-tools-static"):
            download.download_apk_tools(BuildConfig(), tmp_path / "apk.apk", client)
