"""Unit tests for filter list retrieval and caching."""

from __future__ import annotations

import socket
import urllib.error
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from contentblock.adblock.filter_lists import (
    FilterListCache,
    fetch_source,
    fetch_source_async,
    validate_source,
)
from contentblock.errors import FetchTimeoutError, FetchTransportError, InvalidUpdateUrlError


class TestValidateSource:
    """Tests for validate_source."""

    @pytest.mark.parametrize(
        "source",
        [
            "https://lists.example/easylist.txt",
            "http://lists.example/easylist.txt",
            "file:///var/lib/lists/easylist.txt",
            "/var/lib/lists/easylist.txt",
            "lists/easylist.txt",
        ],
    )
    def test_valid_sources(self, source: str) -> None:
        validate_source(source)

    @pytest.mark.parametrize(
        "source",
        ["", "   ", "ftp://lists.example/x.txt", "https://", "gopher://x", "http://[bad/list.txt"],
    )
    def test_invalid_sources(self, source: str) -> None:
        with pytest.raises(InvalidUpdateUrlError):
            validate_source(source)


class TestFetchSource:
    """Tests for fetch_source."""

    def test_local_path(self, tmp_path: Path) -> None:
        path = tmp_path / "list.txt"
        path.write_bytes(b"[Adblock Plus 2.0]\n")
        assert fetch_source(str(path), 1.0) == b"[Adblock Plus 2.0]\n"

    def test_file_url(self, tmp_path: Path) -> None:
        path = tmp_path / "list.txt"
        path.write_bytes(b"[Adblock Plus 2.0]\n")
        assert fetch_source(path.as_uri(), 1.0) == b"[Adblock Plus 2.0]\n"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FetchTransportError):
            fetch_source(str(tmp_path / "missing.txt"), 1.0)

    def test_http(self) -> None:
        response = MagicMock()
        response.read.return_value = b"[Adblock Plus 2.0]\n"
        response.__enter__.return_value = response

        with patch("urllib.request.urlopen", return_value=response) as mock_urlopen:
            assert fetch_source("https://lists.example/x.txt", 5.0) == b"[Adblock Plus 2.0]\n"

        request = mock_urlopen.call_args.args[0]
        assert request.full_url == "https://lists.example/x.txt"
        assert mock_urlopen.call_args.kwargs["timeout"] == 5.0

    def test_http_timeout(self) -> None:
        with patch("urllib.request.urlopen", side_effect=socket.timeout("timed out")):
            with pytest.raises(FetchTimeoutError):
                fetch_source("https://lists.example/x.txt", 5.0)

        error = urllib.error.URLError(TimeoutError("timed out"))
        with patch("urllib.request.urlopen", side_effect=error):
            with pytest.raises(FetchTimeoutError):
                fetch_source("https://lists.example/x.txt", 5.0)

    def test_http_transport_error(self) -> None:
        error = urllib.error.URLError("connection refused")
        with patch("urllib.request.urlopen", side_effect=error):
            with pytest.raises(FetchTransportError):
                fetch_source("https://lists.example/x.txt", 5.0)

    def test_http_status_error(self) -> None:
        error = urllib.error.HTTPError("https://lists.example/x.txt", 404, "Not Found", {}, None)
        with patch("urllib.request.urlopen", side_effect=error):
            with pytest.raises(FetchTransportError):
                fetch_source("https://lists.example/x.txt", 5.0)

    @pytest.mark.asyncio
    async def test_fetch_async(self, tmp_path: Path) -> None:
        path = tmp_path / "list.txt"
        path.write_bytes(b"[Adblock Plus 2.0]\n")
        assert await fetch_source_async(str(path), 1.0) == b"[Adblock Plus 2.0]\n"


class TestFilterListCache:
    """Tests for FilterListCache."""

    def test_save_and_load(self, tmp_path: Path) -> None:
        cache = FilterListCache(tmp_path)
        cache.save("easylist", "https://lists.example/x.txt", "[Adblock Plus 2.0]\n||a.com^", 100.0, "sum")

        cached = cache.load("easylist")
        assert cached is not None
        content, meta = cached
        assert content == "[Adblock Plus 2.0]\n||a.com^"
        assert meta.last_update == 100.0
        assert meta.checksum == "sum"
        assert meta.line_count == 2

    def test_metadata_persists(self, tmp_path: Path) -> None:
        FilterListCache(tmp_path).save("easylist", "src", "[Adblock Plus 2.0]\n", 100.0)

        cache = FilterListCache(tmp_path)
        meta = cache.metadata("easylist")
        assert meta is not None
        assert meta.source == "src"
        assert cache.load("easylist") is not None

    def test_unsafe_profile_id(self, tmp_path: Path) -> None:
        cache = FilterListCache(tmp_path)
        cache.save("../escape", "src", "text", 1.0)
        assert not (tmp_path.parent / "escape.txt").exists()
        assert cache.load("../escape") is not None

    def test_missing_entry(self, tmp_path: Path) -> None:
        assert FilterListCache(tmp_path).load("missing") is None

    def test_remove(self, tmp_path: Path) -> None:
        cache = FilterListCache(tmp_path)
        cache.save("easylist", "src", "text", 1.0)
        cache.remove("easylist")
        cache.remove("easylist")
        assert cache.load("easylist") is None
        assert FilterListCache(tmp_path).metadata("easylist") is None

    def test_corrupt_metadata(self, tmp_path: Path) -> None:
        (tmp_path / "cache_meta.json").write_text("{not json")
        cache = FilterListCache(tmp_path)
        assert cache.load("easylist") is None
        cache.save("easylist", "src", "text", 1.0)
        assert cache.load("easylist") is not None
