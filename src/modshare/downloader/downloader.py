"""
Package downloader: relay -> package cache.

Bytes are streamed into a hidden partial file inside the cache root while
being hashed. Only a complete download whose digest matches is adopted into
the cache; on any error or cancellation the partial file is deleted, so the
cache never holds a record for incomplete bytes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from ..cache.package_cache import CacheRecord, PackageCache
from ..cancellation import CancellationToken, check_cancelled
from ..errors import TransportError
from ..fs.hashing import StreamHasher, normalize_digest
from ..transfer.channel import ProgressCallback, TransferChannel


class DownloadStatus(str, Enum):
    """Status of a single package download."""
    DOWNLOADED = "downloaded"
    ALREADY_CACHED = "already_cached"


@dataclass
class DownloadResult:
    status: DownloadStatus
    record: CacheRecord
    bytes_received: int = 0


class _HashingSink:
    """File wrapper that hashes everything written through it."""

    def __init__(self, f):
        self._f = f
        self.hasher = StreamHasher()

    def write(self, data: bytes) -> int:
        self.hasher.update(data)
        return self._f.write(data)


class PackageDownloader:
    """
    Usage:
        downloader = PackageDownloader(cache=cache, channel=channel)
        result = downloader.download_to_cache(digest, progress=cb, cancel=token)
        install(result.record.local_path)
    """

    def __init__(self, *, cache: PackageCache, channel: TransferChannel, verify: bool = True):
        self._cache = cache
        self._channel = channel
        self._verify = verify
        self._log = logging.getLogger(__name__)

    def download_to_cache(
        self,
        digest: str,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> DownloadResult:
        """
        Ensure the package for `digest` is in the cache.

        Raises:
            TransportError: On relay failure or digest mismatch.
            OperationCancelled: If cancelled; no partial file remains.
            CacheWriteError: If the finished file cannot be moved into the cache.
        """
        key = normalize_digest(digest)
        if not key:
            raise ValueError("digest must not be empty")

        existing = self._cache.lookup(key)
        if existing is not None:
            self._log.debug("Package %s already cached", key)
            return DownloadResult(status=DownloadStatus.ALREADY_CACHED, record=existing)

        check_cancelled(cancel)
        partial = self._cache.partial_path(key)
        try:
            with open(partial, "wb") as f:
                sink = _HashingSink(f)
                received = self._channel.download(key, sink, progress=progress, cancel=cancel)

            actual = sink.hasher.hexdigest()
            if self._verify and actual != key:
                raise TransportError(f"downloaded bytes hash to {actual}, expected {key}")

            record = self._cache.adopt(key, partial)
        except BaseException:
            _discard(partial)
            raise

        self._log.info("Downloaded package %s (%d bytes)", key, received)
        return DownloadResult(status=DownloadStatus.DOWNLOADED, record=record, bytes_received=received)


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
