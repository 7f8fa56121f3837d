"""
Deterministic zip packaging of an installed mod folder.

Used by the upload path to export a folder into a single transferable
package. Repeated exports of an unchanged folder must produce byte-identical
archives so that their digests match and the relay can deduplicate them.
"""

from __future__ import annotations

import os
import tempfile
import zipfile
from pathlib import Path
from typing import NamedTuple, Optional

from ..cancellation import CancellationToken, check_cancelled
from .hashing import BUFFER_SIZE, list_tree_files


# Every entry carries this timestamp regardless of the source file's mtime.
FIXED_ENTRY_TIMESTAMP = (2022, 1, 1, 0, 0, 0)

# Unix create_system with rw-r--r-- permissions, independent of the host OS.
_CREATE_SYSTEM_UNIX = 3
_EXTERNAL_ATTR = (0o100644 & 0xFFFF) << 16

PACKAGE_SUFFIX = ".pmp"


class ArchiveResult(NamedTuple):
    """Result of an archive operation."""
    zip_path: Path
    files_archived: int
    bytes_archived: int


def _entry_info(rel_path: str, size: int) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(rel_path, date_time=FIXED_ENTRY_TIMESTAMP)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.create_system = _CREATE_SYSTEM_UNIX
    info.external_attr = _EXTERNAL_ATTR
    info.file_size = size
    return info


def create_deterministic_archive(
    source_dir: Path,
    destination: Path,
    *,
    cancel: Optional[CancellationToken] = None,
) -> ArchiveResult:
    """
    Zip every file under `source_dir` into `destination`.

    Entries are written in ordinal order of their `/`-separated relative
    paths, each stamped with FIXED_ENTRY_TIMESTAMP. The archive is written to a
    temporary sibling and moved into place only when complete.

    Args:
        source_dir: The folder to package.
        destination: Target archive path.
        cancel: Optional token checked between files and chunks.

    Returns:
        ArchiveResult with the archive path and statistics.

    Raises:
        NotADirectoryError: If `source_dir` is not a directory.
        OperationCancelled: If `cancel` is set; no partial archive remains.
        OSError: If reading or writing fails.
    """
    source_dir = Path(source_dir)
    if not source_dir.is_dir():
        raise NotADirectoryError(str(source_dir))

    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    files = list_tree_files(source_dir)
    bytes_archived = 0

    fd, tmp_path_str = tempfile.mkstemp(
        dir=str(destination.parent),
        prefix=f".{destination.name}.",
        suffix=".tmp",
    )
    tmp_path = Path(tmp_path_str)
    try:
        with os.fdopen(fd, "wb") as raw:
            with zipfile.ZipFile(raw, "w") as zf:
                for rel_path, full_path in files:
                    check_cancelled(cancel)
                    size = full_path.stat().st_size
                    info = _entry_info(rel_path, size)
                    with open(full_path, "rb") as src, zf.open(info, "w", force_zip64=size > zipfile.ZIP64_LIMIT) as dst:
                        while True:
                            check_cancelled(cancel)
                            chunk = src.read(BUFFER_SIZE)
                            if not chunk:
                                break
                            dst.write(chunk)
                    bytes_archived += size
        os.replace(tmp_path, destination)
    finally:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass

    return ArchiveResult(
        zip_path=destination,
        files_archived=len(files),
        bytes_archived=bytes_archived,
    )


def list_archive_entries(archive_path: Path) -> list[str]:
    """Entry names of an archive in stored order."""
    with zipfile.ZipFile(archive_path, "r") as zf:
        return [info.filename for info in zf.infolist()]
