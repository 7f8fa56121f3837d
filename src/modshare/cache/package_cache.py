"""
Content-addressed local package store.

Layout: <cache root>/<DIGEST>.pmp, one file per unique digest. Bytes are
written to a hidden temporary sibling first and moved into place only when
complete, so a record never points at a partial file.

Records are owner-counted in memory. `store`/`adopt` acquire one ownership,
`release` drops one and deletes the file when no owner remains. Files found
on disk at startup are owned by the cache itself (one ownership) so that an
operation that merely reuses them cannot delete them on release.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import CacheWriteError
from ..fs.archive_zip import PACKAGE_SUFFIX
from ..fs.hashing import normalize_digest
from ..fs.naming import cached_package_filename

PARTIAL_SUFFIX = ".part"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheRecord:
    digest: str
    local_path: Path

    @property
    def size(self) -> int:
        return self.local_path.stat().st_size


class PackageCache:
    """
    Thread-safe: hashing and transfers call into the cache from worker threads.

    Usage:
        cache = PackageCache(paths.cache)
        record = cache.store(digest, exported_file)
        ...
        cache.release(record)
    """

    def __init__(self, root: Path):
        self._root = Path(root)
        self._lock = threading.RLock()
        self._records: dict[str, CacheRecord] = {}
        self._owners: dict[str, int] = {}

        self._root.mkdir(parents=True, exist_ok=True)
        self.purge_partials()
        self._load_existing()

    @property
    def root(self) -> Path:
        return self._root

    def _load_existing(self) -> None:
        for path in self._root.iterdir():
            if not path.is_file() or path.name.startswith("."):
                continue
            if path.suffix.lower() != PACKAGE_SUFFIX:
                continue
            digest = normalize_digest(path.stem)
            if not digest:
                continue
            self._records[digest] = CacheRecord(digest=digest, local_path=path)
            self._owners[digest] = 1

    def _path_for(self, digest: str) -> Path:
        return self._root / cached_package_filename(digest)

    def _live_record(self, digest: str) -> Optional[CacheRecord]:
        record = self._records.get(digest)
        if record is None:
            return None
        if record.local_path.is_file():
            return record
        # Backing file vanished underneath us
        logger.debug("Dropping cache record %s: file missing", digest)
        self._records.pop(digest, None)
        self._owners.pop(digest, None)
        return None

    def lookup(self, digest: str) -> Optional[CacheRecord]:
        """Record for `digest`, or None. Never touches the network."""
        key = normalize_digest(digest)
        with self._lock:
            return self._live_record(key)

    def contains(self, digest: str) -> bool:
        return self.lookup(digest) is not None

    def store(self, digest: str, source_path: Path) -> CacheRecord:
        """
        Copy `source_path` into the cache under `digest`.

        If a live record already exists the source is not read and the
        existing record is returned.

        Raises:
            CacheWriteError: If the copy cannot complete.
        """
        key = normalize_digest(digest)
        if not key:
            raise ValueError("digest must not be empty")

        with self._lock:
            existing = self._live_record(key)
            if existing is not None:
                self._owners[key] = self._owners.get(key, 0) + 1
                return existing

            final_path = self._path_for(key)
            tmp_path: Optional[Path] = None
            try:
                fd, tmp_path_str = tempfile.mkstemp(
                    dir=str(self._root),
                    prefix=f".{final_path.name}.",
                    suffix=PARTIAL_SUFFIX,
                )
                os.close(fd)
                tmp_path = Path(tmp_path_str)
                shutil.copyfile(source_path, tmp_path)
                os.replace(tmp_path, final_path)
            except OSError as exc:
                raise CacheWriteError(key, f"could not store package: {exc}") from exc
            finally:
                if tmp_path is not None:
                    try:
                        tmp_path.unlink()
                    except FileNotFoundError:
                        pass

            return self._register(key, final_path)

    def adopt(self, digest: str, partial_path: Path) -> CacheRecord:
        """
        Move a fully written file (usually from `partial_path()`) into the
        cache under `digest`. The partial file is consumed either way.

        Raises:
            CacheWriteError: If the file cannot be moved into place.
        """
        key = normalize_digest(digest)
        partial_path = Path(partial_path)

        with self._lock:
            existing = self._live_record(key)
            if existing is not None:
                _unlink_quietly(partial_path)
                self._owners[key] = self._owners.get(key, 0) + 1
                return existing

            final_path = self._path_for(key)
            try:
                os.replace(partial_path, final_path)
            except OSError as exc:
                _unlink_quietly(partial_path)
                raise CacheWriteError(key, f"could not adopt package: {exc}") from exc

            return self._register(key, final_path)

    def _register(self, key: str, path: Path) -> CacheRecord:
        record = CacheRecord(digest=key, local_path=path)
        self._records[key] = record
        self._owners[key] = 1
        return record

    def release(self, record: CacheRecord) -> bool:
        """
        Drop one ownership of `record`. When none remain the backing file and
        the record are deleted.

        Returns:
            True if the backing file was removed.
        """
        key = normalize_digest(record.digest)
        with self._lock:
            if key not in self._records:
                return False

            remaining = self._owners.get(key, 1) - 1
            if remaining > 0:
                self._owners[key] = remaining
                return False

            self._records.pop(key, None)
            self._owners.pop(key, None)
            try:
                record.local_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to delete cached package %s: %s", key, exc)
                return False
            return True

    def partial_path(self, digest: str) -> Path:
        """A unique hidden path inside the cache root for an in-progress download."""
        key = normalize_digest(digest) or "UNKNOWN"
        return self._root / f".{key}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}"

    def purge_partials(self) -> int:
        """Delete leftover partial files from interrupted writes."""
        removed = 0
        for path in self._root.iterdir():
            if path.is_file() and path.name.startswith(".") and path.name.endswith(PARTIAL_SUFFIX):
                if _unlink_quietly(path):
                    removed += 1
        return removed

    def entries(self) -> list[CacheRecord]:
        with self._lock:
            return [r for r in list(self._records.values()) if self._live_record(r.digest) is not None]

    def owner_count(self, digest: str) -> int:
        with self._lock:
            return self._owners.get(normalize_digest(digest), 0)


def _unlink_quietly(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.debug("Failed to delete %s: %s", path, exc)
        return False
