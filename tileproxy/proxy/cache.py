"""
On-Disk Tile Cache
==================

One file per cached asset inside a dedicated directory. The file name is the
SHA-1 hex digest of the normalized upstream URL; the existence of the file is
the only authority (no index, no metadata sidecar).

Writes go to a uniquely named temporary file in the same directory and are
published with an atomic rename once the full body has been flushed, so a
reader never observes a partial entry. Upstream assets are assumed to be
immutable: concurrent writers for the same key race on the rename and the last
one wins with identical bytes.
"""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi.concurrency import run_in_threadpool

from ..models import AssetKind

logger = logging.getLogger(__name__)

# Query parameters that vary per session/credential but not per asset
VOLATILE_PARAMS = frozenset({"key", "session"})

MANIFEST_KEY_PREFIX = "json:"

CONTENT_TYPES = {
    AssetKind.MANIFEST: "application/json; charset=utf-8",
    AssetKind.MESH: "model/gltf-binary",
}


# =============================================================================
# Cache Keys
# =============================================================================

def classify_asset(path: str) -> Optional[AssetKind]:
    """
    Classify an upstream path by suffix.

    Returns:
        AssetKind for cacheable assets, None for everything else
    """
    if path.endswith(".glb"):
        return AssetKind.MESH
    if path.endswith(".json"):
        return AssetKind.MANIFEST
    return None


def normalize_url(url: str) -> str:
    """
    Strip credential parameters so one asset maps to one cache entry.

    Example:
        >>> normalize_url("https://tiles.example/a.glb?key=k&session=s&v=1")
        'https://tiles.example/a.glb?v=1'
    """
    parts = urlsplit(url)
    query = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if name not in VOLATILE_PARAMS
    ]
    return urlunsplit(parts._replace(query=urlencode(query)))


def cache_key(url: str, kind: AssetKind) -> str:
    """
    Compute the cache key (hex digest) for an upstream URL.

    Manifests are prefixed before hashing so they can never collide with a
    mesh key built from the same normalized string.
    """
    normalized = normalize_url(url)
    if kind is AssetKind.MANIFEST:
        normalized = MANIFEST_KEY_PREFIX + normalized
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()


# =============================================================================
# Cache Store
# =============================================================================

class TileCache:
    """
    Directory-backed store of immutable tile assets.

    Attributes:
        cache_dir: Directory holding the cache files
    """

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)

    def ensure_directory(self) -> None:
        """Create the cache directory if it does not exist."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.cache_dir / key

    def lookup(self, key: str) -> Optional[os.stat_result]:
        """
        Stat the entry for ``key``.

        Returns:
            Stat result of the cache file, or None on a miss

        Raises:
            OSError: If the file exists but cannot be inspected
        """
        try:
            return self.path_for(key).stat()
        except FileNotFoundError:
            return None

    async def open_writer(self, key: str) -> Optional["CacheWriter"]:
        """
        Start a new entry for ``key``.

        Returns None (after logging) if the temporary file cannot be created;
        the caller then streams without caching.
        """
        # no await between creating the file and handing it to a writer
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=self.cache_dir,
                prefix=f"{key}.",
                suffix=".tmp",
            )
        except OSError as e:
            logger.error(f"Cannot create cache temp file for {key}: {e}")
            return None

        return CacheWriter(os.fdopen(fd, "wb"), Path(tmp_path), self.path_for(key))


class CacheWriter:
    """
    Temporary file that becomes a cache entry on commit.

    Every exit path must end in ``commit()`` or ``discard()``; ``discard()``
    after a successful commit is a no-op. A failed write abandons the entry
    and turns later writes into no-ops.
    """

    def __init__(self, handle, tmp_path: Path, final_path: Path):
        self._handle = handle
        self.tmp_path = tmp_path
        self.final_path = final_path
        self.closed = False

    async def write(self, chunk: bytes) -> None:
        if self.closed:
            return
        try:
            await run_in_threadpool(self._handle.write, chunk)
        except OSError as e:
            logger.error(f"Cache write failed for {self.final_path.name}: {e}")
            await self.discard()

    async def commit(self) -> bool:
        """
        Flush, fsync and atomically rename the temp file into place.

        Returns:
            True if the entry is now visible under its final name
        """
        if self.closed:
            return False
        try:
            await run_in_threadpool(self._finish)
        except OSError as e:
            logger.error(f"Rename cache file error for {self.final_path.name}: {e}")
            await self.discard()
            return False

        logger.debug("Stored cache entry", extra={"cache_path": str(self.final_path)})
        return True

    async def discard(self) -> None:
        if self.closed:
            return
        await run_in_threadpool(self._remove_temp)
        self.closed = True

    def _finish(self) -> None:
        self._handle.flush()
        os.fsync(self._handle.fileno())
        self._handle.close()
        os.replace(self.tmp_path, self.final_path)
        self.closed = True

    def _remove_temp(self) -> None:
        try:
            self._handle.close()
        except OSError:
            pass
        try:
            os.unlink(self.tmp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Cannot remove cache temp file {self.tmp_path}: {e}")
