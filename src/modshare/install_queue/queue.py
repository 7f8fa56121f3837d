"""
Install queue for incoming transfer notifications.

All pending / selection / queue state is mutated under one asyncio.Lock and
never while awaiting I/O. A single consumer task installs queued
notifications one at a time. The status refresh works on a copy of the
folder names and only writes the advisory status cache.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Iterable, Optional

from src.modshare.cache.package_cache import PackageCache
from src.modshare.cancellation import CancellationToken
from src.modshare.errors import BusyError, ModShareError, OperationCancelled
from src.modshare.events import EventBus, EventType
from src.modshare.host.capability import ModHost
from src.modshare.resolver.redownload import ResolveRequest
from src.modshare.resolver.service import PackageInstaller
from src.modshare.transfer.channel import TransferChannel
from src.shared.versions import is_newer

from .models import InstallState, ModStatus, TransferNotification

logger = logging.getLogger(__name__)


def install_request(notification: TransferNotification) -> ResolveRequest:
    info = notification.package_info
    return ResolveRequest(
        digest=notification.digest,
        name_hint=notification.folder_hint or (info.display_name if info else None),
        author_hint=info.author if info else None,
        version_hint=info.version if info else None,
    )


class InstallQueue:
    def __init__(
        self,
        *,
        installer: PackageInstaller,
        channel: TransferChannel,
        host: ModHost,
        bus: EventBus,
        cache: Optional[PackageCache] = None,
        delete_package_after_install: bool = False,
    ):
        self._installer = installer
        self._channel = channel
        self._host = host
        self._bus = bus
        self._cache = cache
        self._delete_after_install = delete_package_after_install

        self._lock = asyncio.Lock()
        self._pending: list[TransferNotification] = []
        self._states: dict[str, InstallState] = {}
        self._errors: dict[str, str] = {}
        self._progress: dict[str, float] = {}
        self._selected: set[str] = set()
        self._queue: deque[str] = deque()
        self._current: Optional[str] = None
        self._batch_total = 0
        self._batch_done = 0

        self._consumer: Optional[asyncio.Task] = None
        self._cancel: Optional[CancellationToken] = None
        self._status_cache: dict[str, ModStatus] = {}
        self._background: set[asyncio.Task] = set()

    # --- read helpers (no lock: single event loop, no awaits) ---

    @property
    def active(self) -> bool:
        return self._current is not None or bool(self._queue)

    def pending(self) -> list[TransferNotification]:
        return list(self._pending)

    def selected(self) -> set[str]:
        return set(self._selected)

    def queued(self) -> list[str]:
        return list(self._queue)

    @property
    def current(self) -> Optional[str]:
        return self._current

    def state_of(self, digest: str) -> Optional[InstallState]:
        return self._states.get(digest)

    def error_of(self, digest: str) -> Optional[str]:
        return self._errors.get(digest)

    def status_of(self, notification: TransferNotification) -> Optional[ModStatus]:
        folder = notification.folder_hint
        return self._status_cache.get(folder) if folder else None

    def is_installed(self, notification: TransferNotification) -> bool:
        status = self.status_of(notification)
        return status is not None and status.is_installed

    def update_available(self, notification: TransferNotification) -> bool:
        status = self.status_of(notification)
        if status is None or not status.is_installed or notification.package_info is None:
            return False
        return is_newer(notification.package_info.version, status.version)

    def _find(self, digest: str) -> Optional[TransferNotification]:
        for notification in self._pending:
            if notification.digest == digest:
                return notification
        return None

    # --- arrival ---

    async def on_arrival(self, notification: TransferNotification) -> bool:
        """Add an offer; returns False if one with the same digest is already pending."""
        async with self._lock:
            if self._find(notification.digest) is not None:
                return False
            self._pending.append(notification)
            self._states[notification.digest] = InstallState.PENDING

        await self._bus.emit(EventType.TRANSFER_AVAILABLE, notification=notification.to_dict())
        self.schedule_refresh()
        return True

    # --- selection ---

    def _selectable(self, digest: str) -> bool:
        state = self._states.get(digest)
        return state is not None and not state.is_locked()

    async def set_selected(self, digest: str, selected: bool) -> bool:
        async with self._lock:
            if self._find(digest) is None or not self._selectable(digest):
                return False
            if selected:
                self._selected.add(digest)
            else:
                self._selected.discard(digest)
            return True

    async def toggle_selected(self, digest: str) -> bool:
        async with self._lock:
            if self._find(digest) is None or not self._selectable(digest):
                return False
            if digest in self._selected:
                self._selected.discard(digest)
            else:
                self._selected.add(digest)
            return True

    async def _select_where(self, predicate) -> int:
        async with self._lock:
            self._selected = {
                n.digest for n in self._pending
                if self._selectable(n.digest) and predicate(n)
            }
            return len(self._selected)

    async def select_all(self) -> int:
        return await self._select_where(lambda n: True)

    async def select_installed(self) -> int:
        return await self._select_where(self.is_installed)

    async def select_new(self) -> int:
        return await self._select_where(lambda n: not self.is_installed(n))

    async def clear_selection(self) -> None:
        async with self._lock:
            self._selected.clear()

    # --- batch ---

    async def start_batch(self) -> int:
        """
        Queue every selected pending notification, in pending order, and start
        installing them one at a time.

        Returns:
            Number of notifications queued (0 if nothing was selected).

        Raises:
            BusyError: If a batch is already running.
        """
        async with self._lock:
            if self.active:
                raise BusyError("an install batch is already running")

            to_queue = [
                n.digest for n in self._pending
                if n.digest in self._selected and self._selectable(n.digest)
            ]
            if not to_queue:
                return 0

            for digest in to_queue:
                self._states[digest] = InstallState.QUEUED
                self._errors.pop(digest, None)
                self._queue.append(digest)
            self._batch_total = len(to_queue)
            self._batch_done = 0
            self._cancel = CancellationToken()
            cancel = self._cancel

        await self._bus.emit(EventType.BATCH_STARTED, digests=to_queue)
        self._consumer = asyncio.create_task(self._consume(cancel))
        return len(to_queue)

    def cancel_batch(self, reason: str = "cancelled") -> bool:
        """Stop the running batch; the current and all queued items return to Pending."""
        if self._cancel is None or not self.active:
            return False
        self._cancel.cancel(reason)
        return True

    async def wait_idle(self) -> None:
        consumer = self._consumer
        if consumer is not None:
            await asyncio.shield(consumer)

    async def _consume(self, cancel: CancellationToken) -> None:
        cancelled = False
        try:
            while True:
                async with self._lock:
                    if cancel.cancelled:
                        cancelled = True
                        self._revert_queued()
                        break
                    if not self._queue:
                        self._current = None
                        break
                    digest = self._queue[0]
                    notification = self._find(digest)
                    if notification is None:
                        self._queue.popleft()
                        continue
                    self._current = digest
                    self._states[digest] = InstallState.INSTALLING
                    self._progress[digest] = 0.0

                try:
                    await self._install_one(notification, cancel)
                except OperationCancelled:
                    cancelled = True
                    async with self._lock:
                        self._revert_queued()
                    break
        finally:
            if self._current is not None or self._queue:
                async with self._lock:
                    self._revert_queued()
            self._current = None
            self._cancel = None
            await self._bus.emit(
                EventType.BATCH_FINISHED,
                cancelled=cancelled,
                completed=self._batch_done,
                total=self._batch_total,
            )
            self.schedule_refresh()

    def _revert_queued(self) -> None:
        """Return the current and all queued notifications to Pending. Lock held."""
        for digest in ([self._current] if self._current else []) + list(self._queue):
            if self._find(digest) is not None:
                self._states[digest] = InstallState.PENDING
            self._progress.pop(digest, None)
        self._queue.clear()
        self._current = None

    async def _install_one(self, notification: TransferNotification, cancel: CancellationToken) -> None:
        digest = notification.digest
        loop = asyncio.get_running_loop()

        def on_progress(stage: str, fraction: float) -> None:
            # Called from worker threads
            overall = 0.5 * fraction if stage == "download" else 0.5 + 0.5 * fraction
            self._progress[digest] = overall
            loop.call_soon_threadsafe(self._emit_progress, digest, stage, overall)

        success = False
        try:
            outcome, record = await self._installer.run(install_request(notification), progress=on_progress, cancel=cancel)
            success = True
            if self._delete_after_install and self._cache is not None and outcome.downloaded:
                self._cache.release(record)
            logger.info("Installed %s into %s", digest, outcome.folder_name)
        except OperationCancelled:
            raise
        except (ModShareError, OSError) as exc:
            logger.warning("Install of %s failed: %s", digest, exc)
            await self._mark_failed(digest, str(exc) or type(exc).__name__)
        except Exception:
            logger.exception("Install of %s failed unexpectedly", digest)
            await self._mark_failed(digest, "install failed unexpectedly")

        if success:
            async with self._lock:
                self._pending = [n for n in self._pending if n.digest != digest]
                self._selected.discard(digest)
                self._states.pop(digest, None)
                self._errors.pop(digest, None)
                self._progress.pop(digest, None)
                self._dequeue_head(digest)
            await self._acknowledge(notification)

        await self._bus.emit(EventType.TRANSFER_COMPLETED, digest=digest, success=success)

    async def _mark_failed(self, digest: str, message: str) -> None:
        async with self._lock:
            self._states[digest] = InstallState.FAILED
            self._errors[digest] = message
            self._progress.pop(digest, None)
            self._dequeue_head(digest)

    def _dequeue_head(self, digest: str) -> None:
        """Lock held."""
        if self._queue and self._queue[0] == digest:
            self._queue.popleft()
        self._batch_done += 1

    def _emit_progress(self, digest: str, stage: str, fraction: float) -> None:
        task = asyncio.ensure_future(
            self._bus.emit(EventType.TRANSFER_PROGRESS, digest=digest, stage=stage, fraction=fraction)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- discard ---

    async def discard(self, digests: Iterable[str]) -> list[TransferNotification]:
        """
        Remove notifications that are not currently installing, and
        acknowledge each to its sender.
        """
        wanted = set(digests)
        async with self._lock:
            removed = [n for n in self._pending if n.digest in wanted and n.digest != self._current]
            removed_digests = {n.digest for n in removed}
            self._pending = [n for n in self._pending if n.digest not in removed_digests]
            self._selected -= removed_digests
            self._queue = deque(d for d in self._queue if d not in removed_digests)
            for digest in removed_digests:
                self._states.pop(digest, None)
                self._errors.pop(digest, None)

        for notification in removed:
            await self._bus.emit(EventType.TRANSFER_DISCARDED, notification=notification.to_dict())
            await self._acknowledge(notification)
        return removed

    async def discard_selected(self) -> list[TransferNotification]:
        return await self.discard(self.selected())

    async def discard_all(self) -> list[TransferNotification]:
        return await self.discard([n.digest for n in self.pending()])

    async def _acknowledge(self, notification: TransferNotification) -> None:
        if not notification.digest or not notification.sender_id:
            return
        try:
            await asyncio.to_thread(self._channel.acknowledge, notification.digest, notification.sender_id)
        except (ModShareError, OSError) as exc:
            logger.warning("Failed to acknowledge %s to %s: %s", notification.digest, notification.sender_id, exc)
            return
        await self._bus.emit(
            EventType.TRANSFER_ACKNOWLEDGED,
            digest=notification.digest,
            sender_id=notification.sender_id,
        )

    # --- advisory status ---

    def schedule_refresh(self) -> asyncio.Task:
        task = asyncio.create_task(self.refresh_status())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def refresh_status(self) -> dict[str, ModStatus]:
        """Recompute installed / version status for every folder referenced by a pending notification."""
        async with self._lock:
            folders = list(dict.fromkeys(n.folder_hint for n in self._pending if n.folder_hint))

        fresh: dict[str, ModStatus] = {}
        for folder in folders:
            try:
                fresh[folder] = await asyncio.to_thread(self._probe, folder)
            except Exception as exc:
                logger.warning("Failed to update mod status for %s: %s", folder, exc)

        self._status_cache.update(fresh)
        await self._bus.emit(EventType.STATUS_REFRESHED, folders=sorted(fresh))
        return fresh

    def _probe(self, folder: str) -> ModStatus:
        if not self._host.mod_exists(folder):
            return ModStatus(is_installed=False)
        meta = self._host.get_metadata(folder)
        return ModStatus(is_installed=True, version=meta.version if meta else None)

    # --- views ---

    def snapshot(self) -> dict[str, Any]:
        items = []
        for n in self._pending:
            status = self.status_of(n)
            items.append({
                **n.to_dict(),
                "state": self._states.get(n.digest, InstallState.PENDING).value,
                "selected": n.digest in self._selected,
                "error": self._errors.get(n.digest),
                "progress": self._progress.get(n.digest),
                "installed": status.is_installed if status else None,
                "installed_version": status.version if status else None,
                "update_available": self.update_available(n),
            })
        return {
            "active": self.active,
            "current": self._current,
            "queued": list(self._queue),
            "batch_total": self._batch_total,
            "batch_done": self._batch_done,
            "pending": items,
        }
