"""
Upload coordinator: installed folders -> deduplicated packages -> relay.

One batch at a time per coordinator. Hashing, caching and transfers run in
worker threads; the coordinator itself runs on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from src.shared.stats.metrics import compute_fraction, compute_throughput

from ..backup.models import PackageEntry
from ..cache.package_cache import CacheRecord, PackageCache
from ..cancellation import CancellationToken, check_cancelled
from ..errors import BusyError
from ..transfer.channel import BatchUploadResult, TransferChannel, UploadOutcome
from .dedup import DedupResult, DigestIndex
from .sources import PackageSourceResolver, PreparedPackage

# Packages at or above this size are skipped without contacting the relay
DEFAULT_MAX_UPLOAD_BYTES = 1024 * 1024 * 1024  # 1 GiB

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadProgress:
    uploaded_bytes: int
    total_bytes: int
    elapsed_s: float
    throughput_bps: float
    current_digest: Optional[str] = None

    @property
    def fraction(self) -> float:
        return compute_fraction(self.uploaded_bytes, self.total_bytes)

    def to_dict(self) -> dict:
        return {
            "uploaded_bytes": self.uploaded_bytes,
            "total_bytes": self.total_bytes,
            "elapsed_s": round(self.elapsed_s, 3),
            "throughput_bps": round(self.throughput_bps, 1),
            "current_digest": self.current_digest,
            "fraction": self.fraction,
        }


# Called from worker threads
UploadProgressCallback = Callable[[UploadProgress], None]


@dataclass
class UploadBatchReport:
    """
    Everything a caller needs after a batch: per-digest outcomes, metadata
    for every unique digest, and which folders produced each digest.
    """
    result: BatchUploadResult
    entries: list[PackageEntry] = field(default_factory=list)
    folders_by_digest: dict[str, list[str]] = field(default_factory=dict)

    @property
    def digests(self) -> list[str]:
        return [e.digest for e in self.entries]

    @property
    def ok(self) -> bool:
        return self.result.ok

    @property
    def offending_digests(self) -> list[str]:
        return sorted(self.result.hard_failures)

    @property
    def offending_names(self) -> list[str]:
        by_digest = {e.digest: e.display_name for e in self.entries}
        return [by_digest.get(d, d) for d in self.offending_digests]

    @property
    def skipped_names(self) -> list[str]:
        return [e.display_name for e in self.entries if e.digest in self.result.skipped_too_large]

    @property
    def surviving_entries(self) -> list[PackageEntry]:
        """Entries that reached the relay (neither failed nor skipped)."""
        succeeded = self.result.succeeded(self.digests)
        return [e for e in self.entries if e.digest in succeeded]

    def to_public_dict(self) -> dict:
        return {
            "ok": self.ok,
            "result": self.result.to_dict(),
            "entries": [e.to_dict() for e in self.entries],
            "folders_by_digest": {d: list(f) for d, f in self.folders_by_digest.items()},
            "offending_names": self.offending_names,
            "skipped_names": self.skipped_names,
        }


class _ProgressAggregator:
    """Sums byte progress across digests; updated from worker threads."""

    def __init__(self, total_bytes: int, callback: Optional[UploadProgressCallback]):
        self._total = total_bytes
        self._callback = callback
        self._completed = 0
        self._started = time.monotonic()
        self._lock = threading.Lock()

    def report(self, digest: Optional[str], transferred: int) -> None:
        if self._callback is None:
            return
        with self._lock:
            uploaded = self._completed + transferred
        elapsed = time.monotonic() - self._started
        self._callback(UploadProgress(
            uploaded_bytes=uploaded,
            total_bytes=self._total,
            elapsed_s=elapsed,
            throughput_bps=compute_throughput(uploaded, elapsed),
            current_digest=digest,
        ))

    def finish_item(self, size: int) -> None:
        with self._lock:
            self._completed += size


class UploadCoordinator:
    """
    Usage:
        coordinator = UploadCoordinator(cache=cache, channel=channel, sources=sources)
        report = await coordinator.upload_folders(["FolderA", "FolderB"], ["friend-uid"])
        if not report.ok:
            print("Upload failed for:", report.offending_names)
    """

    def __init__(
        self,
        *,
        cache: PackageCache,
        channel: TransferChannel,
        sources: PackageSourceResolver,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        release_created: bool = True,
    ):
        self._cache = cache
        self._channel = channel
        self._sources = sources
        self._max_upload_bytes = max_upload_bytes
        self._release_created = release_created
        self._active = False

    @property
    def busy(self) -> bool:
        return self._active

    async def upload_folders(
        self,
        folder_names: Sequence[str],
        recipients: Sequence[str],
        *,
        store_only: bool = False,
        snapshot: bool = False,
        progress: Optional[UploadProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> UploadBatchReport:
        """
        Package, deduplicate and upload installed folders.

        Args:
            folder_names: Installed folders to send; duplicates are ignored.
            recipients: Accounts to offer the packages to.
            store_only: Upload bytes without offering them to anyone.
            snapshot: Export current folder state instead of reusing backups.

        Raises:
            BusyError: If a batch is already running.
            ValueError: If there is nothing to send or nobody to send it to.
            PackagePreparationError / CacheWriteError: If a folder cannot be
                packaged or cached; nothing is uploaded.
            OperationCancelled: If cancelled.
        """
        if self._active:
            raise BusyError("an upload batch is already in progress")

        folders = list(dict.fromkeys(f.strip() for f in folder_names if f and f.strip()))
        if not folders:
            raise ValueError("no folders selected for upload")
        recipients = list(dict.fromkeys(r.strip() for r in recipients if r and r.strip()))
        if not recipients and not store_only:
            raise ValueError("at least one recipient is required")
        if store_only:
            recipients = []

        self._active = True
        created: list[CacheRecord] = []
        try:
            logger.info("Upload batch started: %d folder(s), %d recipient(s)", len(folders), len(recipients))
            entries, index = await self._prepare_all(folders, snapshot=snapshot, created=created, cancel=cancel)
            result = await self._upload_all(entries, recipients, progress=progress, cancel=cancel)
            report = UploadBatchReport(
                result=result,
                entries=entries,
                folders_by_digest={d: index.folders_for(d) for d in index.digests},
            )
            if report.ok:
                logger.info(
                    "Upload batch finished: %d package(s), %d skipped as too large",
                    len(entries),
                    len(result.skipped_too_large),
                )
            else:
                logger.warning("Upload batch failed for: %s", ", ".join(report.offending_names))
            return report
        finally:
            if self._release_created:
                for record in created:
                    self._cache.release(record)
            self._active = False

    async def _prepare_all(
        self,
        folders: list[str],
        *,
        snapshot: bool,
        created: list[CacheRecord],
        cancel: Optional[CancellationToken],
    ) -> tuple[list[PackageEntry], DigestIndex]:
        index = DigestIndex()
        entries: list[PackageEntry] = []

        for folder in folders:
            check_cancelled(cancel)
            prepared = await asyncio.to_thread(self._sources.prepare, folder, snapshot=snapshot, cancel=cancel)
            try:
                if index.check_and_register(prepared.digest, folder).result == DedupResult.DUPLICATE:
                    logger.debug("Folder %s duplicates digest %s", folder, prepared.digest)
                    continue

                entry = await asyncio.to_thread(self._sources.describe, prepared, cancel=cancel)
                entries.append(entry)
                await asyncio.to_thread(self._ensure_cached, prepared, created)
            finally:
                prepared.discard_temporary()

        return entries, index

    def _ensure_cached(self, prepared: PreparedPackage, created: list[CacheRecord]) -> None:
        if self._cache.lookup(prepared.digest) is not None:
            return
        created.append(self._cache.store(prepared.digest, prepared.package_path))

    async def _upload_all(
        self,
        entries: list[PackageEntry],
        recipients: list[str],
        *,
        progress: Optional[UploadProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> BatchUploadResult:
        result = BatchUploadResult()

        records: dict[str, CacheRecord] = {}
        for entry in entries:
            record = self._cache.lookup(entry.digest)
            if record is None:
                result.record(UploadOutcome.LOCALLY_MISSING, entry.digest)
            else:
                records[entry.digest] = record
        if result.locally_missing:
            logger.warning("Upload aborted, missing locally: %s", ", ".join(sorted(result.locally_missing)))
            # Nothing was attempted; no digest of the batch reached the relay
            for digest in records:
                result.record(UploadOutcome.FAILED, digest)
            return result

        sizes: dict[str, int] = {}
        for digest, record in records.items():
            size = record.size
            if size >= self._max_upload_bytes:
                logger.info("Skipping %s: %d bytes exceeds the upload limit", digest, size)
                result.record(UploadOutcome.SKIPPED_TOO_LARGE, digest)
            else:
                sizes[digest] = size

        aggregator = _ProgressAggregator(sum(sizes.values()), progress)
        for digest, size in sizes.items():
            check_cancelled(cancel)
            outcome = await asyncio.to_thread(
                self._channel.upload,
                digest,
                records[digest].local_path,
                recipients,
                entries,
                progress=lambda sent, _total, d=digest: aggregator.report(d, sent),
                cancel=cancel,
            )
            result.merge(outcome)
            aggregator.finish_item(size)
            aggregator.report(None, 0)

        return result
