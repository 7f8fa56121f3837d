from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from src.modshare.fs.hashing import normalize_digest


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_utc_z(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_utc(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return utc_now()
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    return utc_now()


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class PackageEntry:
    """
    One package in a backup or upload batch. Identity is `digest`;
    `install_folder_name` is only a hint for where it was installed.
    """
    digest: str
    install_folder_name: str
    display_name: str
    author: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None
    folder_digest: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "digest": self.digest,
            "install_folder_name": self.install_folder_name,
            "display_name": self.display_name,
            "author": self.author,
            "version": self.version,
            "description": self.description,
            "website": self.website,
            "folder_digest": self.folder_digest,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PackageEntry":
        digest = normalize_digest(data.get("digest"))
        if not digest:
            raise ValueError("package entry requires a digest")
        folder = str(data.get("install_folder_name") or "").strip()
        return cls(
            digest=digest,
            install_folder_name=folder,
            display_name=str(data.get("display_name") or "").strip() or folder or digest,
            author=_optional_text(data.get("author")),
            version=_optional_text(data.get("version")),
            description=_optional_text(data.get("description")),
            website=_optional_text(data.get("website")),
            folder_digest=_optional_text(data.get("folder_digest")),
        )


@dataclass(frozen=True)
class BackupSummary:
    backup_id: str
    name: str
    entry_count: int
    is_complete: bool
    created_at: datetime

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.backup_id,
            "name": self.name,
            "entry_count": self.entry_count,
            "is_complete": self.is_complete,
            "created_at": format_utc_z(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupSummary":
        return cls(
            backup_id=str(data["id"]),
            name=str(data.get("name") or ""),
            entry_count=int(data.get("entry_count") or 0),
            is_complete=bool(data.get("is_complete", False)),
            created_at=parse_utc(data.get("created_at")),
        )


@dataclass(frozen=True)
class Backup:
    summary: BackupSummary
    entries: tuple[PackageEntry, ...] = field(default_factory=tuple)

    @property
    def backup_id(self) -> str:
        return self.summary.backup_id

    def to_public_dict(self) -> dict[str, Any]:
        payload = self.summary.to_public_dict()
        payload["entries"] = [e.to_dict() for e in self.entries]
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Backup":
        entries = tuple(PackageEntry.from_dict(e) for e in data.get("entries") or [])
        summary = BackupSummary.from_dict({**data, "entry_count": data.get("entry_count", len(entries))})
        return cls(summary=summary, entries=entries)


@dataclass
class RestoreReport:
    """Outcome of a restore. `failed_index` is set when the restore halted."""
    backup_id: str
    total: int
    installed: list[str] = field(default_factory=list)
    failed_index: Optional[int] = None
    failed_name: Optional[str] = None
    failed_digest: Optional[str] = None
    failure_stage: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.failed_index is None

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "total": self.total,
            "installed": list(self.installed),
            "succeeded": self.succeeded,
            "failed_index": self.failed_index,
            "failed_name": self.failed_name,
            "failed_digest": self.failed_digest,
            "failure_stage": self.failure_stage,
            "error": self.error,
        }
