"""
Filter list retrieval and caching.

Fetches list text from http(s) URLs or local files, and keeps the last
validated copy of each profile's list on disk so rules survive restarts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import ssl
import threading
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

from ..config import get_data_dir
from ..errors import FetchTimeoutError, FetchTransportError, InvalidUpdateUrlError

logger = logging.getLogger(__name__)

USER_AGENT = "contentblock/1.0"

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


def validate_source(source: str) -> None:
    """Check that a profile source can be fetched.

    Accepts http(s) URLs, file:// URLs and local paths.

    Raises:
        InvalidUpdateUrlError: If the source is empty or uses another scheme.
    """
    if not source or not source.strip():
        raise InvalidUpdateUrlError("update URL is empty")

    try:
        parsed = urlparse(source.strip())
    except ValueError as e:
        raise InvalidUpdateUrlError(f"malformed update URL {source!r}: {e}") from e

    if parsed.scheme in ("http", "https"):
        if not parsed.netloc:
            raise InvalidUpdateUrlError(f"update URL has no host: {source}")
        return
    if parsed.scheme == "file":
        return
    if "://" in source:
        raise InvalidUpdateUrlError(f"unsupported update URL scheme: {parsed.scheme}")


def fetch_source(source: str, timeout: float) -> bytes:
    """Fetch raw list content (blocking).

    Raises:
        InvalidUpdateUrlError: For unusable sources.
        FetchTimeoutError: If the server did not answer in time.
        FetchTransportError: For any other transport failure.
    """
    validate_source(source)
    source = source.strip()
    parsed = urlparse(source)

    if parsed.scheme in ("http", "https"):
        ctx = ssl.create_default_context()
        req = urllib.request.Request(source, headers={"User-Agent": USER_AGENT})
        try:
            with urllib.request.urlopen(req, timeout=timeout, context=ctx) as response:
                data: bytes = response.read()
                return data
        except TimeoutError as e:
            raise FetchTimeoutError(f"timed out fetching {source}") from e
        except urllib.error.URLError as e:
            if isinstance(e.reason, TimeoutError):
                raise FetchTimeoutError(f"timed out fetching {source}") from e
            raise FetchTransportError(f"failed to fetch {source}: {e.reason}") from e
        except OSError as e:
            raise FetchTransportError(f"failed to fetch {source}: {e}") from e

    path = Path(url2pathname(parsed.path)) if parsed.scheme == "file" else Path(source)
    try:
        return path.expanduser().read_bytes()
    except OSError as e:
        raise FetchTransportError(f"failed to read {path}: {e}") from e


async def fetch_source_async(source: str, timeout: float) -> bytes:
    """Fetch list content without blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fetch_source, source, timeout)


@dataclass
class CachedListMetadata:
    """Metadata for a cached filter list."""

    profile_id: str
    source: str
    last_update: float
    checksum: str | None
    line_count: int


class FilterListCache:
    """Last validated list text per profile, stored on disk."""

    def __init__(self, cache_dir: Path | None = None) -> None:
        self._cache_dir = cache_dir if cache_dir is not None else get_data_dir() / "adblock"
        self._metadata: dict[str, CachedListMetadata] | None = None
        self._lock = threading.Lock()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def _list_path(self, profile_id: str) -> Path:
        return self._cache_dir / "lists" / f"{_SAFE_NAME_RE.sub('_', profile_id)}.txt"

    def _meta_path(self) -> Path:
        return self._cache_dir / "cache_meta.json"

    def _load_metadata(self) -> dict[str, CachedListMetadata]:
        """Load cache metadata."""
        if self._metadata is not None:
            return self._metadata

        self._metadata = {}
        meta_path = self._meta_path()
        if not meta_path.exists():
            return self._metadata

        try:
            with open(meta_path) as f:
                data = json.load(f)

            for profile_id, info in data.items():
                self._metadata[profile_id] = CachedListMetadata(
                    profile_id=info["profile_id"],
                    source=info["source"],
                    last_update=info["last_update"],
                    checksum=info.get("checksum"),
                    line_count=info["line_count"],
                )
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning("Failed to load filter list cache metadata: %s", e)

        return self._metadata

    def _save_metadata(self) -> None:
        """Save cache metadata."""
        meta_path = self._meta_path()
        meta_path.parent.mkdir(parents=True, exist_ok=True)

        data = {name: asdict(meta) for name, meta in self._load_metadata().items()}
        try:
            with open(meta_path, "w") as f:
                json.dump(data, f)
        except OSError as e:
            logger.warning("Failed to save filter list cache metadata: %s", e)

    def metadata(self, profile_id: str) -> CachedListMetadata | None:
        with self._lock:
            return self._load_metadata().get(profile_id)

    def load(self, profile_id: str) -> tuple[str, CachedListMetadata] | None:
        """Load a cached list and its metadata."""
        with self._lock:
            meta = self._load_metadata().get(profile_id)
            cache_path = self._list_path(profile_id)
            if meta is None or not cache_path.exists():
                return None

            try:
                with open(cache_path, encoding="utf-8") as f:
                    return f.read(), meta
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Failed to load filter list %s from cache: %s", profile_id, e)
                return None

    def save(
        self,
        profile_id: str,
        source: str,
        content: str,
        last_update: float,
        checksum: str | None = None,
    ) -> None:
        """Save a validated list to the cache."""
        with self._lock:
            cache_path = self._list_path(profile_id)
            cache_path.parent.mkdir(parents=True, exist_ok=True)

            try:
                with open(cache_path, "w", encoding="utf-8") as f:
                    f.write(content)
            except OSError as e:
                logger.warning("Failed to save filter list %s to cache: %s", profile_id, e)
                return

            self._load_metadata()[profile_id] = CachedListMetadata(
                profile_id=profile_id,
                source=source,
                last_update=last_update,
                checksum=checksum,
                line_count=content.count("\n") + 1,
            )
            self._save_metadata()

        logger.debug("Filter list cached: %s", profile_id)

    def remove(self, profile_id: str) -> None:
        with self._lock:
            if self._load_metadata().pop(profile_id, None) is not None:
                self._save_metadata()
            try:
                self._list_path(profile_id).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Failed to remove cached filter list %s: %s", profile_id, e)
