"""
Data directory structure management.

Directory structure:
    <data_root>/cache/                 content-addressed package cache
    <data_root>/temp_mod_send/         throwaway exports awaiting hashing
    <data_root>/backups/<folder>/      local package backups per mod folder
    <data_root>/runs/                  background operation records
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import NamedTuple, Optional

from .archive_zip import PACKAGE_SUFFIX


class DataPaths(NamedTuple):
    """Paths under the data root."""
    root: Path
    cache: Path
    temp_exports: Path
    backups: Path
    runs: Path


class StorageManager:
    """
    Manages the data directory used by the cache, exports and local backups.
    """

    def __init__(self, data_root: Path):
        """
        Args:
            data_root: The root directory for all locally managed data.
        """
        self._data_root = Path(data_root).resolve()

    @property
    def data_root(self) -> Path:
        return self._data_root

    def get_paths(self) -> DataPaths:
        root = self._data_root
        return DataPaths(
            root=root,
            cache=root / "cache",
            temp_exports=root / "temp_mod_send",
            backups=root / "backups",
            runs=root / "runs",
        )

    def ensure_dirs(self) -> DataPaths:
        """
        Ensure the data directories exist, creating them if needed.

        Raises:
            OSError: If directories cannot be created.
        """
        paths = self.get_paths()
        for path in (paths.cache, paths.temp_exports, paths.backups, paths.runs):
            path.mkdir(parents=True, exist_ok=True)
        return paths

    def backup_dir_for(self, folder_name: str) -> Path:
        return self.get_paths().backups / folder_name

    def list_package_backups(self, folder_name: str) -> list[Path]:
        """
        List local package backups for a mod folder, oldest first.

        Hidden files and unfinished (.tmp) files are ignored.
        """
        directory = self.backup_dir_for(folder_name)
        if not directory.is_dir():
            return []

        files = [
            f for f in directory.iterdir()
            if f.is_file()
            and not f.name.startswith(".")
            and f.suffix.lower() == PACKAGE_SUFFIX
        ]
        return sorted(files, key=lambda f: (f.stat().st_mtime, f.name))

    def latest_package_backup(self, folder_name: str) -> Optional[Path]:
        backups = self.list_package_backups(folder_name)
        return backups[-1] if backups else None


def newest_modification_time(root: Path) -> Optional[float]:
    """
    Newest mtime of any file or directory under `root` (inclusive).

    Returns None if `root` does not exist. This is the folder's "last
    modification" fingerprint used to decide whether a backup is stale.
    """
    if not root.exists():
        return None

    newest = root.stat().st_mtime
    for dirpath, dirnames, filenames in os.walk(root):
        for name in list(dirnames) + list(filenames):
            try:
                mtime = (Path(dirpath) / name).stat().st_mtime
            except OSError:
                continue
            if mtime > newest:
                newest = mtime
    return newest
