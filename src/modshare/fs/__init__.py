"""
File system utilities for mod packages.

Provides:
- Data directory structure management (storage.py)
- Package and folder naming conventions (naming.py)
- Content hashing for files and folder trees (hashing.py)
- Deterministic zip packaging (archive_zip.py)
"""

from .storage import StorageManager, DataPaths, newest_modification_time
from .naming import sanitize_folder_name, cached_package_filename
from .hashing import compute_file_hash, compute_directory_hash, normalize_digest
from .archive_zip import create_deterministic_archive, ArchiveResult

__all__ = [
    "StorageManager",
    "DataPaths",
    "newest_modification_time",
    "sanitize_folder_name",
    "cached_package_filename",
    "compute_file_hash",
    "compute_directory_hash",
    "normalize_digest",
    "create_deterministic_archive",
    "ArchiveResult",
]
