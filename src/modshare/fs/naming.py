"""
Naming conventions for packages and install folders.

- Cached package: <DIGEST>.pmp
- Temporary export: <uuid hex>.pmp
- Install folder: the mod's folder name, sanitized to be valid on every
  platform the host might run on.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from .archive_zip import PACKAGE_SUFFIX
from .hashing import normalize_digest


# Characters rejected in a single path component on Windows, which is the
# strictest platform a mod folder travels to.
INVALID_FOLDER_CHARS = frozenset('<>:"/\\|?*') | frozenset(chr(c) for c in range(32))

UNKNOWN_MOD_NAME = "UnknownMod"


def sanitize_folder_name(value: Optional[str]) -> str:
    """
    Derive a filesystem-safe folder name.

    Invalid characters become `_`; surrounding whitespace and trailing dots
    are trimmed. Blank input yields an empty string.
    """
    if value is None or not value.strip():
        return ""

    result = "".join("_" if ch in INVALID_FOLDER_CHARS else ch for ch in value.strip())
    return result.strip().rstrip(".").rstrip()


def cached_package_filename(digest: str) -> str:
    """Filename of a cached package: <DIGEST>.pmp"""
    key = normalize_digest(digest)
    if not key:
        raise ValueError("digest must not be empty")
    return f"{key}{PACKAGE_SUFFIX}"


def temporary_export_filename() -> str:
    """Unique filename for a throwaway export."""
    return f"{uuid.uuid4().hex}{PACKAGE_SUFFIX}"


def local_backup_filename(now: Optional[datetime] = None) -> str:
    """
    Filename for a local package backup of a mod folder.

    Format: backup_{YYYYMMDD_HHMMSS}.pmp
    """
    now = now or datetime.now()
    return f"backup_{now.strftime('%Y%m%d_%H%M%S')}{PACKAGE_SUFFIX}"


def default_backup_name(now: Optional[datetime] = None) -> str:
    """Default display name for a relay backup: 'Mod Backup YYYY-MM-DD HH:MM'."""
    now = now or datetime.now()
    return f"Mod Backup {now.strftime('%Y-%m-%d %H:%M')}"
