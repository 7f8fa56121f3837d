"""
Install-folder resolution for a received or re-downloaded package.

Pure: the result depends only on the request, the policy and an
InstalledSnapshot captured beforehand (see snapshot.py). Precedence, first
match wins:

1. exact folder-name match
2. unique display-name match (case-insensitive)
3. best-scoring display-name match among several candidates
4. sanitized name already known to the host or present on disk
5. "<sanitized>-<first 8 digest chars>"
6. the sanitized name
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from src.modshare.fs.hashing import DIGEST_PREFIX_LENGTH, normalize_digest
from src.modshare.fs.naming import UNKNOWN_MOD_NAME, sanitize_folder_name
from src.modshare.host.capability import ModMetadata


class ResolutionRule(str, Enum):
    EXACT_FOLDER = "exact_folder"
    UNIQUE_DISPLAY_NAME = "unique_display_name"
    SCORED_DISPLAY_NAME = "scored_display_name"
    SANITIZED_EXISTING = "sanitized_existing"
    DIGEST_SUFFIXED = "digest_suffixed"
    SANITIZED = "sanitized"


@dataclass(frozen=True)
class ResolverPolicy:
    name_weight: int = 2
    author_weight: int = 2
    version_weight: int = 1
    metadata_failure_penalty: int = 1
    digest_prefix_length: int = DIGEST_PREFIX_LENGTH

    def to_persist_dict(self) -> dict:
        return {
            "name_weight": self.name_weight,
            "author_weight": self.author_weight,
            "version_weight": self.version_weight,
            "metadata_failure_penalty": self.metadata_failure_penalty,
            "digest_prefix_length": self.digest_prefix_length,
        }

    @classmethod
    def from_persist_dict(cls, data: dict) -> "ResolverPolicy":
        defaults = cls()

        def _int(key: str, default: int) -> int:
            try:
                return int(data.get(key, default))
            except (TypeError, ValueError):
                return default

        return cls(
            name_weight=_int("name_weight", defaults.name_weight),
            author_weight=_int("author_weight", defaults.author_weight),
            version_weight=_int("version_weight", defaults.version_weight),
            metadata_failure_penalty=_int("metadata_failure_penalty", defaults.metadata_failure_penalty),
            digest_prefix_length=max(1, _int("digest_prefix_length", defaults.digest_prefix_length)),
        )


@dataclass(frozen=True)
class MetadataLookup:
    """Pre-fetched metadata for one candidate; `failed` marks a lookup error."""
    metadata: Optional[ModMetadata] = None
    failed: bool = False


@dataclass(frozen=True)
class InstalledSnapshot:
    """
    Installed-package state the resolver reads.

    Attributes:
        mods: {folder name: display name} as listed by the host.
        metadata: Lookups for display-name candidates.
        host_known: Folder names the host reported as existing.
        on_disk: Directory names present under the install root.
    """
    mods: Mapping[str, str] = field(default_factory=dict)
    metadata: Mapping[str, MetadataLookup] = field(default_factory=dict)
    host_known: frozenset[str] = frozenset()
    on_disk: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ResolveRequest:
    digest: str
    name_hint: Optional[str] = None
    author_hint: Optional[str] = None
    version_hint: Optional[str] = None

    def preferred_name(self) -> str:
        """The trimmed name hint, or the digest when no name was given."""
        name = (self.name_hint or "").strip()
        return name or normalize_digest(self.digest)


@dataclass(frozen=True)
class Resolution:
    folder_name: str
    rule: ResolutionRule


def _same(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    a, b = a.strip(), b.strip()
    return bool(a) and bool(b) and a.casefold() == b.casefold()


def display_name_candidates(mods: Mapping[str, str], preferred: str) -> list[str]:
    """Folder names whose display name equals `preferred` (case-insensitive), ordinal order."""
    return sorted(
        folder for folder, display in mods.items()
        if folder.strip() and display and _same(display, preferred)
    )


def score_candidate(
    lookup: Optional[MetadataLookup],
    request: ResolveRequest,
    policy: ResolverPolicy,
) -> int:
    if lookup is None or lookup.failed:
        return -policy.metadata_failure_penalty
    meta = lookup.metadata
    if meta is None:
        return 0

    score = 0
    if _same(meta.name, request.preferred_name()):
        score += policy.name_weight
    if _same(meta.author, request.author_hint):
        score += policy.author_weight
    if _same(meta.version, request.version_hint):
        score += policy.version_weight
    return score


def resolve_install_folder(
    request: ResolveRequest,
    snapshot: InstalledSnapshot,
    policy: Optional[ResolverPolicy] = None,
) -> Resolution:
    """Pick the install folder for a package. Always returns a usable name."""
    policy = policy or ResolverPolicy()
    digest = normalize_digest(request.digest)
    preferred = request.preferred_name()

    if preferred in snapshot.mods:
        return Resolution(preferred, ResolutionRule.EXACT_FOLDER)

    candidates = display_name_candidates(snapshot.mods, preferred)
    if len(candidates) == 1:
        return Resolution(candidates[0], ResolutionRule.UNIQUE_DISPLAY_NAME)

    if candidates:
        best: Optional[str] = None
        best_score: Optional[int] = None
        for folder in candidates:
            score = score_candidate(snapshot.metadata.get(folder), request, policy)
            # Strict comparison keeps the ordinally first candidate on ties
            if best_score is None or score > best_score:
                best, best_score = folder, score
        if best is not None:
            return Resolution(best, ResolutionRule.SCORED_DISPLAY_NAME)

    sanitized = sanitize_folder_name(preferred)
    if not sanitized:
        sanitized = digest or UNKNOWN_MOD_NAME

    existing = find_existing_folder(sanitized, snapshot)
    if existing is not None:
        return Resolution(existing, ResolutionRule.SANITIZED_EXISTING)

    if len(digest) >= policy.digest_prefix_length:
        return Resolution(
            f"{sanitized}-{digest[:policy.digest_prefix_length]}",
            ResolutionRule.DIGEST_SUFFIXED,
        )

    return Resolution(sanitized, ResolutionRule.SANITIZED)


def find_existing_folder(sanitized: str, snapshot: InstalledSnapshot) -> Optional[str]:
    """
    `sanitized` (or the installed folder matching it case-insensitively) if
    the host or the install root already knows it.
    """
    if sanitized in snapshot.host_known or sanitized in snapshot.mods:
        return sanitized

    folded = sanitized.casefold()
    for folder in sorted(snapshot.mods):
        if folder.casefold() == folded:
            return folder

    if sanitized in snapshot.on_disk:
        return sanitized
    return None
