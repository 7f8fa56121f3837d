"""
Package sources for an upload: which file represents an installed mod folder,
its digest, and the metadata sent along with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..backup.models import PackageEntry
from ..cancellation import CancellationToken
from ..errors import OperationCancelled, PackagePreparationError
from ..fs.archive_zip import create_deterministic_archive
from ..fs.hashing import compute_directory_hash, compute_file_hash
from ..fs.naming import local_backup_filename, temporary_export_filename
from ..fs.storage import StorageManager, newest_modification_time
from ..host.capability import ModHost, ModMetadata

WEBSITE_BACKTICK = "`"

logger = logging.getLogger(__name__)


def normalize_optional_text(value: Optional[str], *, remove_backticks: bool = False) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    if remove_backticks and WEBSITE_BACKTICK in text:
        text = text.replace(WEBSITE_BACKTICK, "").strip()
    return text or None


def build_package_entry(
    digest: str,
    folder_name: str,
    metadata: Optional[ModMetadata],
    folder_digest: Optional[str] = None,
) -> PackageEntry:
    """Metadata sent with a package; the display name falls back to the folder name."""
    if metadata is None:
        return PackageEntry(
            digest=digest,
            install_folder_name=folder_name,
            display_name=normalize_optional_text(folder_name) or folder_name,
            folder_digest=folder_digest,
        )
    return PackageEntry(
        digest=digest,
        install_folder_name=folder_name,
        display_name=normalize_optional_text(metadata.name) or folder_name,
        author=normalize_optional_text(metadata.author),
        version=normalize_optional_text(metadata.version),
        description=normalize_optional_text(metadata.description),
        website=normalize_optional_text(metadata.website, remove_backticks=True),
        folder_digest=folder_digest,
    )


@dataclass
class PreparedPackage:
    """
    A package file ready to be cached and uploaded.

    `temporary` marks a throwaway export that the caller deletes once its
    bytes are in the cache.
    """
    folder_name: str
    package_path: Path
    digest: str
    temporary: bool

    def discard_temporary(self) -> None:
        if not self.temporary:
            return
        try:
            self.package_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.debug("Failed to delete temporary export %s: %s", self.package_path, exc)


class PackageSourceResolver:
    def __init__(self, *, host: ModHost, storage: StorageManager):
        self._host = host
        self._storage = storage

    def _mod_dir(self, folder_name: str) -> Path:
        root = self._host.get_install_root()
        if root is None:
            raise PackagePreparationError(folder_name, "install root is not available")
        mod_dir = root / folder_name
        if not mod_dir.is_dir():
            raise PackagePreparationError(folder_name, "mod folder does not exist")
        return mod_dir

    def reusable_backup(self, folder_name: str, mod_dir: Path) -> Optional[Path]:
        """Newest local backup, if it is newer than every file in the folder."""
        backup = self._storage.latest_package_backup(folder_name)
        if backup is None:
            return None
        folder_mtime = newest_modification_time(mod_dir)
        if folder_mtime is not None and backup.stat().st_mtime <= folder_mtime:
            return None
        return backup

    def save_local_backup(
        self,
        folder_name: str,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> Path:
        """Export the folder into its local backup directory. Blocking."""
        mod_dir = self._mod_dir(folder_name)
        destination = self._storage.backup_dir_for(folder_name) / local_backup_filename()
        try:
            create_deterministic_archive(mod_dir, destination, cancel=cancel)
        except OSError as exc:
            raise PackagePreparationError(folder_name, f"backup failed: {exc}") from exc
        return destination

    def prepare(
        self,
        folder_name: str,
        *,
        snapshot: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> PreparedPackage:
        """
        Resolve and hash the package for `folder_name`. Blocking.

        Args:
            snapshot: Always export the folder's current state, ignoring backups.

        Raises:
            PackagePreparationError: If no package can be produced or hashed.
            OperationCancelled: If cancelled; no temporary export remains.
        """
        mod_dir = self._mod_dir(folder_name)

        package_path = None if snapshot else self.reusable_backup(folder_name, mod_dir)
        temporary = package_path is None
        if package_path is None:
            paths = self._storage.ensure_dirs()
            package_path = paths.temp_exports / temporary_export_filename()
            try:
                create_deterministic_archive(mod_dir, package_path, cancel=cancel)
            except OperationCancelled:
                raise
            except OSError as exc:
                raise PackagePreparationError(folder_name, f"export failed: {exc}") from exc

        prepared = PreparedPackage(folder_name=folder_name, package_path=package_path, digest="", temporary=temporary)
        try:
            prepared.digest = compute_file_hash(package_path, cancel=cancel)
        except OperationCancelled:
            prepared.discard_temporary()
            raise
        except OSError as exc:
            prepared.discard_temporary()
            raise PackagePreparationError(folder_name, f"hashing failed: {exc}") from exc

        return prepared

    def describe(
        self,
        prepared: PreparedPackage,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> PackageEntry:
        """Build the metadata entry for a prepared package. Blocking, best effort."""
        folder_digest: Optional[str] = None
        try:
            folder_digest = compute_directory_hash(self._mod_dir(prepared.folder_name), cancel=cancel)
        except (OSError, PackagePreparationError) as exc:
            logger.debug("Failed to compute folder digest for %s: %s", prepared.folder_name, exc)

        try:
            metadata = self._host.get_metadata(prepared.folder_name)
        except (OSError, ValueError) as exc:
            logger.debug("Failed to read metadata for %s: %s", prepared.folder_name, exc)
            metadata = None

        return build_package_entry(prepared.digest, prepared.folder_name, metadata, folder_digest)
