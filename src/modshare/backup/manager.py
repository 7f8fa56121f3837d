"""
Backup lifecycle: create / list / get / delete on the relay, and restore.

Restore is sequential and fails fast: entries are downloaded and installed
in stored order, the first failing entry halts the restore, and entries
installed before it stay installed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from src.modshare.cancellation import CancellationToken, check_cancelled
from src.modshare.errors import BusyError, ModShareError, OperationCancelled, RestoreEntryFailed, UploadFailedError
from src.modshare.fs.naming import default_backup_name
from src.modshare.resolver.redownload import ResolveRequest
from src.modshare.resolver.service import PackageInstaller
from src.modshare.transfer.channel import TransferChannel
from src.modshare.upload.coordinator import UploadCoordinator, UploadProgressCallback
from src.shared.stats.metrics import compute_batch_fraction

from .models import Backup, BackupSummary, PackageEntry, RestoreReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestoreProgress:
    completed: int
    total: int
    current_name: Optional[str]
    stage: str
    fraction: float

    def to_dict(self) -> dict:
        return {
            "completed": self.completed,
            "total": self.total,
            "current_name": self.current_name,
            "stage": self.stage,
            "fraction": self.fraction,
        }


RestoreProgressCallback = Callable[[RestoreProgress], None]


def restore_request(entry: PackageEntry) -> ResolveRequest:
    """Resolver hints for restoring `entry`: its install folder (or digest), author, version."""
    return ResolveRequest(
        digest=entry.digest,
        name_hint=entry.install_folder_name or entry.digest,
        author_hint=entry.author,
        version_hint=entry.version,
    )


class BackupManager:
    def __init__(
        self,
        *,
        channel: TransferChannel,
        coordinator: UploadCoordinator,
        installer: PackageInstaller,
    ):
        self._channel = channel
        self._coordinator = coordinator
        self._installer = installer
        self._active: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._active is not None

    def _acquire(self, what: str) -> None:
        if self._active is not None:
            raise BusyError(f"backup {self._active} is already in progress")
        self._active = what

    def _release(self) -> None:
        self._active = None

    # --- read-only ---

    async def list_backups(self) -> list[BackupSummary]:
        return await asyncio.to_thread(self._channel.list_backups)

    async def get(self, backup_id: str) -> Optional[Backup]:
        """The backup with its entries, or None if the id is unknown."""
        if not backup_id or not backup_id.strip():
            return None
        return await asyncio.to_thread(self._channel.get_backup, backup_id.strip())

    # --- mutations ---

    async def create(self, name: Optional[str], entries: Sequence[PackageEntry]) -> BackupSummary:
        """
        Record a backup of packages already stored on the relay.

        Entries are deduplicated by digest (first wins). `is_complete` on the
        returned summary is False if the relay lacked any digest.

        Raises:
            BusyError: If another backup operation is running.
            ValueError: If `entries` is empty.
        """
        self._acquire("creation")
        try:
            return await self._create(name, entries)
        finally:
            self._release()

    async def _create(self, name: Optional[str], entries: Sequence[PackageEntry]) -> BackupSummary:
        unique: list[PackageEntry] = []
        seen: set[str] = set()
        for entry in entries:
            if entry.digest not in seen:
                seen.add(entry.digest)
                unique.append(entry)
        if not unique:
            raise ValueError("a backup needs at least one package")
        backup_name = (name or "").strip() or default_backup_name()

        summary = await asyncio.to_thread(self._channel.create_backup, backup_name, unique)
        if summary.is_complete:
            logger.info("Created backup %s (%d packages)", summary.backup_id, summary.entry_count)
        else:
            logger.warning("Created incomplete backup %s: relay is missing some packages", summary.backup_id)
        return summary

    async def create_from_installed(
        self,
        folder_names: Sequence[str],
        *,
        name: Optional[str] = None,
        snapshot: bool = False,
        progress: Optional[UploadProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BackupSummary:
        """
        Upload installed folders (store only) and back up what reached the relay.

        Packages skipped as too large are left out of the backup.

        Raises:
            BusyError: If another backup operation or an upload is running.
            UploadFailedError: If any package failed to upload.
            ModShareError: If every package was skipped.
        """
        self._acquire("creation")
        try:
            report = await self._coordinator.upload_folders(
                folder_names,
                [],
                store_only=True,
                snapshot=snapshot,
                progress=progress,
                cancel=cancel,
            )
            if not report.ok:
                raise UploadFailedError(report.offending_names, report.offending_digests)

            survivors = report.surviving_entries
            if report.skipped_names:
                logger.info("Leaving oversized packages out of the backup: %s", ", ".join(report.skipped_names))
            if not survivors:
                raise ModShareError("no packages could be uploaded for the backup")

            check_cancelled(cancel)
            return await self._create(name, survivors)
        finally:
            self._release()

    async def delete(self, backup_id: str) -> None:
        """Delete a backup; unknown ids are a no-op."""
        self._acquire("deletion")
        try:
            await asyncio.to_thread(self._channel.delete_backup, backup_id.strip())
            logger.info("Deleted backup %s", backup_id)
        finally:
            self._release()

    async def restore(
        self,
        backup_id: str,
        *,
        progress: Optional[RestoreProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RestoreReport:
        """
        Download and install every entry of a backup, in stored order.

        Returns a report; if an entry failed, `failed_index`/`failed_name`
        identify it and later entries were not attempted.

        Raises:
            BusyError: If another backup operation is running.
            KeyError: If the backup does not exist.
            OperationCancelled: If cancelled; entries already installed stay.
        """
        self._acquire("restore")
        try:
            backup = await self.get(backup_id)
            if backup is None:
                raise KeyError(backup_id)
            return await self._restore(backup, progress=progress, cancel=cancel)
        finally:
            self._release()

    async def _restore(
        self,
        backup: Backup,
        *,
        progress: Optional[RestoreProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> RestoreReport:
        entries = list(backup.entries)
        total = len(entries)
        report = RestoreReport(backup_id=backup.backup_id, total=total)
        logger.info("Restoring backup %s (%d packages)", backup.backup_id, total)

        def emit(index: int, entry: Optional[PackageEntry], stage: str, current: float) -> None:
            if progress:
                progress(RestoreProgress(
                    completed=index,
                    total=total,
                    current_name=entry.display_name if entry else None,
                    stage=stage,
                    fraction=compute_batch_fraction(index, total, current),
                ))

        for index, entry in enumerate(entries):
            check_cancelled(cancel)
            try:
                folder = await self._restore_entry(index, entry, emit, cancel)
            except RestoreEntryFailed as exc:
                logger.warning("%s", exc)
                report.failed_index = exc.index
                report.failed_name = exc.name
                report.failed_digest = exc.digest
                report.failure_stage = exc.stage
                report.error = exc.reason
                return report
            report.installed.append(folder)

        emit(total, None, "done", 0.0)
        logger.info("Restored backup %s", backup.backup_id)
        return report

    async def _restore_entry(
        self,
        index: int,
        entry: PackageEntry,
        emit: Callable[[int, Optional[PackageEntry], str, float], None],
        cancel: Optional[CancellationToken],
    ) -> str:
        def failed(stage: str, exc: Exception) -> RestoreEntryFailed:
            return RestoreEntryFailed(
                index=index,
                name=entry.display_name,
                digest=entry.digest,
                reason=str(exc) or type(exc).__name__,
                stage=stage,
                cause=exc,
            )

        # Download fills the first half of the entry, extraction the second
        def on_download(transferred: int, size: int) -> None:
            if size > 0:
                emit(index, entry, "download", 0.5 * min(1.0, transferred / size))

        def on_install(_message: str, done: int, size: int) -> None:
            if size > 0:
                emit(index, entry, "install", 0.5 + 0.5 * min(1.0, done / size))

        emit(index, entry, "download", 0.0)
        try:
            fetched = await self._installer.fetch(entry.digest, progress=on_download, cancel=cancel)
        except OperationCancelled:
            raise
        except (ModShareError, OSError) as exc:
            raise failed("download", exc) from exc

        emit(index, entry, "install", 0.5)
        try:
            resolution = await self._installer.resolve(restore_request(entry), cancel=cancel)
            await self._installer.install(
                resolution.folder_name, fetched.record, progress=on_install, cancel=cancel,
            )
        except OperationCancelled:
            raise
        except (ModShareError, OSError) as exc:
            raise failed("install", exc) from exc

        return resolution.folder_name
