"""
Contract between the orchestrators and the relay.

Channel methods are blocking and are called from worker threads
(`asyncio.to_thread`). Every method that moves bytes accepts a
CancellationToken that is checked at each chunk boundary, and a progress
callback receiving `(transferred, total)`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterable, Optional, Protocol, Sequence

from ..backup.models import Backup, BackupSummary, PackageEntry, format_utc_z, parse_utc
from ..cancellation import CancellationToken
from ..fs.hashing import normalize_digest

# (transferred_bytes, total_bytes)
ProgressCallback = Callable[[int, int], None]


class UploadOutcome(str, Enum):
    LOCALLY_MISSING = "locally_missing"
    FORBIDDEN = "forbidden"
    FAILED = "failed"
    SKIPPED_TOO_LARGE = "skipped_too_large"


# Outcomes that fail the whole batch; too-large only shrinks it
HARD_FAILURES = frozenset({
    UploadOutcome.LOCALLY_MISSING,
    UploadOutcome.FORBIDDEN,
    UploadOutcome.FAILED,
})


@dataclass
class BatchUploadResult:
    """
    Per-digest upload outcome. A digest is in at most one set; digests in no
    set succeeded.
    """
    locally_missing: set[str] = field(default_factory=set)
    forbidden: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    skipped_too_large: set[str] = field(default_factory=set)

    def _sets(self) -> dict[UploadOutcome, set[str]]:
        return {
            UploadOutcome.LOCALLY_MISSING: self.locally_missing,
            UploadOutcome.FORBIDDEN: self.forbidden,
            UploadOutcome.FAILED: self.failed,
            UploadOutcome.SKIPPED_TOO_LARGE: self.skipped_too_large,
        }

    def record(self, outcome: UploadOutcome, digest: str) -> None:
        """
        Add `digest` to the set for `outcome`.

        Raises:
            ValueError: If the digest already has a different outcome.
        """
        key = normalize_digest(digest)
        current = self.outcome_of(key)
        if current is not None and current != outcome:
            raise ValueError(f"{key} already recorded as {current.value}")
        self._sets()[outcome].add(key)

    def outcome_of(self, digest: str) -> Optional[UploadOutcome]:
        key = normalize_digest(digest)
        for outcome, digests in self._sets().items():
            if key in digests:
                return outcome
        return None

    def merge(self, other: "BatchUploadResult") -> "BatchUploadResult":
        """Fold `other` into this result (in place) and return self."""
        for outcome, digests in other._sets().items():
            for digest in digests:
                self.record(outcome, digest)
        return self

    @property
    def hard_failures(self) -> set[str]:
        return self.locally_missing | self.forbidden | self.failed

    @property
    def ok(self) -> bool:
        return not self.hard_failures

    def succeeded(self, submitted: Iterable[str]) -> set[str]:
        """Digests of `submitted` that appear in no outcome set."""
        return {
            key for key in (normalize_digest(d) for d in submitted)
            if self.outcome_of(key) is None
        }

    def to_dict(self) -> dict[str, list[str]]:
        return {outcome.value: sorted(digests) for outcome, digests in self._sets().items()}


@dataclass(frozen=True)
class TransferRecord:
    """One entry of the per-account upload or download history."""
    digest: str
    name: str
    counterpart_id: str
    timestamp: datetime
    author: Optional[str] = None
    version: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "digest": self.digest,
            "name": self.name,
            "counterpart_id": self.counterpart_id,
            "timestamp": format_utc_z(self.timestamp),
            "author": self.author,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransferRecord":
        return cls(
            digest=normalize_digest(data.get("digest")),
            name=str(data.get("name") or ""),
            counterpart_id=str(data.get("counterpart_id") or ""),
            timestamp=parse_utc(data.get("timestamp")),
            author=data.get("author") or None,
            version=data.get("version") or None,
        )


@dataclass(frozen=True)
class IncomingOffer:
    """A package offered to this account, as listed by the relay."""
    digest: str
    sender_id: str
    sender_display_hint: str
    package: Optional[PackageEntry] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IncomingOffer":
        package = data.get("package")
        sender_id = str(data.get("sender_id") or "")
        return cls(
            digest=normalize_digest(data.get("digest")),
            sender_id=sender_id,
            sender_display_hint=str(data.get("sender_display_hint") or sender_id),
            package=PackageEntry.from_dict(package) if isinstance(package, dict) else None,
        )


class TransferChannel(Protocol):
    """Relay operations the orchestrators depend on."""

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
        """
        Push one package and offer it to `recipients` (may be empty for
        store-only uploads). Relay rejections are classified into the result;
        OperationCancelled propagates.
        """
        ...

    def download(
        self,
        digest: str,
        sink: BinaryIO,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        """Stream the package bytes into `sink`; returns the byte count."""
        ...

    def list_backups(self) -> list[BackupSummary]:
        ...

    def get_backup(self, backup_id: str) -> Optional[Backup]:
        ...

    def create_backup(self, name: str, entries: Sequence[PackageEntry]) -> BackupSummary:
        """`is_complete` of the returned summary reflects the relay's missing digests."""
        ...

    def delete_backup(self, backup_id: str) -> None:
        ...

    def list_history(self, direction: str) -> list[TransferRecord]:
        """`direction` is "upload" or "download"."""
        ...

    def list_incoming(self) -> list[IncomingOffer]:
        ...

    def offer(self, digest: str, recipients: Sequence[str], package: PackageEntry) -> None:
        """Offer an already stored package without sending its bytes again."""
        ...

    def acknowledge(self, digest: str, sender_id: str) -> None:
        ...
