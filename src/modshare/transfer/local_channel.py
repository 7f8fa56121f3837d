"""
TransferChannel backed by a shared local directory.

Used when no relay URL is configured (several accounts on one machine or a
synced folder). Layout:
    <root>/files/<DIGEST>.pmp
    <root>/backups/<account>/<id>.json
    <root>/inbox/<account>.json        pending offers per recipient
    <root>/history/<account>.json      {"upload": [...], "download": [...]}
    <root>/acks/<account>.json         acknowledgments received by a sender
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Optional, Sequence

from ..backup.models import Backup, BackupSummary, PackageEntry, format_utc_z, utc_now
from ..cancellation import CancellationToken, check_cancelled
from ..errors import OperationCancelled, TransportError
from ..fs.hashing import BUFFER_SIZE, normalize_digest
from ..fs.naming import cached_package_filename
from .channel import BatchUploadResult, IncomingOffer, ProgressCallback, TransferRecord, UploadOutcome

logger = logging.getLogger(__name__)


class LocalTransferChannel:
    def __init__(
        self,
        root: Path,
        account_id: str,
        *,
        max_upload_bytes: Optional[int] = None,
        forbidden_recipients: Sequence[str] = (),
    ) -> None:
        if not account_id.strip():
            raise ValueError("account_id must not be empty")
        self._root = Path(root)
        self._account_id = account_id.strip()
        self._max_upload_bytes = max_upload_bytes
        self._forbidden = frozenset(forbidden_recipients)
        self._lock = threading.RLock()

    @property
    def account_id(self) -> str:
        return self._account_id

    # --- storage helpers ---

    def _file_path(self, digest: str) -> Path:
        return self._root / "files" / cached_package_filename(digest)

    def _backup_dir(self) -> Path:
        return self._root / "backups" / self._account_id

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable relay file %s: %s", path, exc)
            return default

    def _write_json(self, path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
        tmp_path.replace(path)

    def _append_history(self, account_id: str, direction: str, record: TransferRecord) -> None:
        path = self._root / "history" / f"{account_id}.json"
        with self._lock:
            data = self._read_json(path, {})
            data.setdefault(direction, []).append(record.to_dict())
            self._write_json(path, data)

    def _copy_stream(
        self,
        src: BinaryIO,
        dst: BinaryIO,
        total: int,
        progress: Optional[ProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> int:
        copied = 0
        while True:
            check_cancelled(cancel)
            chunk = src.read(BUFFER_SIZE)
            if not chunk:
                break
            dst.write(chunk)
            copied += len(chunk)
            if progress:
                progress(copied, total)
        return copied

    # --- files ---

    def upload(
        self,
        digest: str,
        package_path: Path,
        recipients: Sequence[str],
        metadata: Sequence[PackageEntry],
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BatchUploadResult:
        key = normalize_digest(digest)
        result = BatchUploadResult()
        package_path = Path(package_path)

        try:
            total = package_path.stat().st_size
        except OSError:
            result.record(UploadOutcome.LOCALLY_MISSING, key)
            return result

        if self._max_upload_bytes is not None and total > self._max_upload_bytes:
            result.record(UploadOutcome.SKIPPED_TOO_LARGE, key)
            return result

        if any(r in self._forbidden for r in recipients):
            result.record(UploadOutcome.FORBIDDEN, key)
            return result

        target = self._file_path(key)
        try:
            if target.is_file():
                if progress:
                    progress(total, total)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
                try:
                    with open(package_path, "rb") as src, open(tmp_path, "wb") as dst:
                        self._copy_stream(src, dst, total, progress, cancel)
                    os.replace(tmp_path, target)
                finally:
                    try:
                        tmp_path.unlink()
                    except FileNotFoundError:
                        pass
        except OperationCancelled:
            raise
        except OSError as exc:
            logger.warning("Package %s failed to upload: %s", key, exc)
            result.record(UploadOutcome.FAILED, key)
            return result

        if recipients:
            package = _package_for(key, metadata)
            self.offer(key, recipients, package)
        return result

    def download(
        self,
        digest: str,
        sink: BinaryIO,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        key = normalize_digest(digest)
        path = self._file_path(key)
        try:
            total = path.stat().st_size
            with open(path, "rb") as src:
                received = self._copy_stream(src, sink, total, progress, cancel)
        except FileNotFoundError as exc:
            raise TransportError(f"package {key} is not stored on the relay", status_code=404) from exc
        except OSError as exc:
            raise TransportError(f"download of {key} failed: {exc}") from exc

        for offer in self.list_incoming():
            if offer.digest == key:
                self._record_download(offer)
        return received

    # --- transfers ---

    def offer(self, digest: str, recipients: Sequence[str], package: PackageEntry) -> None:
        key = normalize_digest(digest)
        if not self._file_path(key).is_file():
            raise TransportError(f"package {key} is not stored on the relay", status_code=404)

        now = utc_now()
        with self._lock:
            for recipient in recipients:
                inbox_path = self._root / "inbox" / f"{recipient}.json"
                inbox = self._read_json(inbox_path, [])
                inbox.append({
                    "digest": key,
                    "sender_id": self._account_id,
                    "sender_display_hint": self._account_id,
                    "package": package.to_dict(),
                })
                self._write_json(inbox_path, inbox)
                self._append_history(self._account_id, "upload", TransferRecord(
                    digest=key,
                    name=package.display_name,
                    counterpart_id=recipient,
                    timestamp=now,
                    author=package.author,
                    version=package.version,
                ))

    def list_incoming(self) -> list[IncomingOffer]:
        with self._lock:
            inbox = self._read_json(self._root / "inbox" / f"{self._account_id}.json", [])
        return [IncomingOffer.from_dict(item) for item in inbox if isinstance(item, dict)]

    def acknowledge(self, digest: str, sender_id: str) -> None:
        key = normalize_digest(digest)
        with self._lock:
            inbox_path = self._root / "inbox" / f"{self._account_id}.json"
            inbox = self._read_json(inbox_path, [])
            remaining = [
                item for item in inbox
                if not (isinstance(item, dict)
                        and normalize_digest(item.get("digest")) == key
                        and item.get("sender_id") == sender_id)
            ]
            if len(remaining) != len(inbox):
                self._write_json(inbox_path, remaining)

            acks_path = self._root / "acks" / f"{sender_id}.json"
            acks = self._read_json(acks_path, [])
            acks.append({
                "digest": key,
                "recipient_id": self._account_id,
                "timestamp": format_utc_z(utc_now()),
            })
            self._write_json(acks_path, acks)

    def _record_download(self, offer: IncomingOffer) -> None:
        package = offer.package
        self._append_history(self._account_id, "download", TransferRecord(
            digest=offer.digest,
            name=package.display_name if package else offer.digest,
            counterpart_id=offer.sender_id,
            timestamp=utc_now(),
            author=package.author if package else None,
            version=package.version if package else None,
        ))

    def list_history(self, direction: str) -> list[TransferRecord]:
        if direction not in ("upload", "download"):
            raise ValueError(f"unknown history direction: {direction}")
        with self._lock:
            data = self._read_json(self._root / "history" / f"{self._account_id}.json", {})
        return [TransferRecord.from_dict(item) for item in data.get(direction, []) if isinstance(item, dict)]

    # --- backups ---

    def list_backups(self) -> list[BackupSummary]:
        directory = self._backup_dir()
        if not directory.is_dir():
            return []
        summaries = []
        with self._lock:
            for path in directory.glob("*.json"):
                raw = self._read_json(path, None)
                if isinstance(raw, dict):
                    summaries.append(Backup.from_dict(raw).summary)
        return sorted(summaries, key=lambda s: s.created_at, reverse=True)

    def _backup_path(self, backup_id: str) -> Optional[Path]:
        try:
            canonical = str(uuid.UUID(backup_id))
        except (TypeError, ValueError):
            return None
        return self._backup_dir() / f"{canonical}.json"

    def get_backup(self, backup_id: str) -> Optional[Backup]:
        path = self._backup_path(backup_id)
        if path is None:
            return None
        with self._lock:
            raw = self._read_json(path, None)
        return Backup.from_dict(raw) if isinstance(raw, dict) else None

    def create_backup(self, name: str, entries: Sequence[PackageEntry]) -> BackupSummary:
        missing = [e.digest for e in entries if not self._file_path(e.digest).is_file()]
        backup_id = str(uuid.uuid4())
        payload = {
            "id": backup_id,
            "name": name,
            "entry_count": len(entries),
            "is_complete": not missing,
            "created_at": format_utc_z(utc_now()),
            "entries": [e.to_dict() for e in entries],
        }
        with self._lock:
            self._write_json(self._backup_dir() / f"{backup_id}.json", payload)
        return BackupSummary.from_dict(payload)

    def delete_backup(self, backup_id: str) -> None:
        path = self._backup_path(backup_id)
        if path is None:
            return
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                pass


def _package_for(digest: str, metadata: Sequence[PackageEntry]) -> PackageEntry:
    for entry in metadata:
        if entry.digest == digest:
            return entry
    return PackageEntry(digest=digest, install_folder_name="", display_name=digest)
