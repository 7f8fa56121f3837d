"""
Digest-based deduplication for an upload batch.

"First wins": the first folder that produces a digest owns the upload and
its metadata. Later folders with the same digest are not uploaded again, but
their names are kept so the batch can still report every folder involved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..fs.hashing import normalize_digest


class DedupResult(str, Enum):
    """Result of a deduplication check."""
    NEW = "new"              # First folder with this digest; schedule an upload
    DUPLICATE = "duplicate"  # Digest already scheduled by an earlier folder


@dataclass
class DedupCheckResult:
    result: DedupResult
    digest: str
    first_folder: str


@dataclass
class DigestIndex:
    """
    Usage:
        index = DigestIndex()
        for folder, digest in hashed_sources:
            if index.check_and_register(digest, folder).result == DedupResult.NEW:
                schedule_upload(digest)
        index.folders_for(digest)  # every folder that hashed to digest
    """

    # Digest -> folder names in registration order; the first one won
    _folders: dict[str, list[str]] = field(default_factory=dict)

    _total_checked: int = 0
    _duplicates_found: int = 0

    @property
    def digests(self) -> list[str]:
        """Unique digests in first-seen order."""
        return list(self._folders.keys())

    @property
    def total_checked(self) -> int:
        return self._total_checked

    @property
    def duplicates_found(self) -> int:
        return self._duplicates_found

    def is_known(self, digest: str) -> bool:
        return normalize_digest(digest) in self._folders

    def check_and_register(self, digest: str, folder_name: str) -> DedupCheckResult:
        self._total_checked += 1
        key = normalize_digest(digest)

        folders = self._folders.get(key)
        if folders is not None:
            if folder_name not in folders:
                folders.append(folder_name)
            self._duplicates_found += 1
            return DedupCheckResult(result=DedupResult.DUPLICATE, digest=key, first_folder=folders[0])

        self._folders[key] = [folder_name]
        return DedupCheckResult(result=DedupResult.NEW, digest=key, first_folder=folder_name)

    def first_folder(self, digest: str) -> Optional[str]:
        folders = self._folders.get(normalize_digest(digest))
        return folders[0] if folders else None

    def folders_for(self, digest: str) -> list[str]:
        return list(self._folders.get(normalize_digest(digest), ()))

    def stats(self) -> dict:
        return {
            "total_checked": self._total_checked,
            "duplicates_found": self._duplicates_found,
            "unique_digests": len(self._folders),
        }
