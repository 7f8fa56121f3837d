"""
ModHost over a plain directory: every sub-directory is an installed mod and
its metadata lives in `meta.json` (`Name`, `Author`, `Version`,
`Description`, `Website`).
"""

from __future__ import annotations

import json
import logging
import shutil
import uuid
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from src.modshare.cancellation import CancellationToken, check_cancelled
from src.modshare.errors import OperationCancelled
from src.modshare.fs.hashing import BUFFER_SIZE
from src.modshare.fs.naming import sanitize_folder_name

from .capability import InstallProgressCallback, ModMetadata

METADATA_FILENAME = "meta.json"

logger = logging.getLogger(__name__)


def _text(data: dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _safe_member_path(name: str) -> Optional[PurePosixPath]:
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts or not path.parts:
        return None
    return path


class DirectoryModHost:
    def __init__(self, root: Path):
        self._root = Path(root)

    def get_install_root(self) -> Optional[Path]:
        return self._root if self._root.is_dir() else None

    def _mod_dir(self, folder_name: str) -> Optional[Path]:
        if not folder_name or sanitize_folder_name(folder_name) != folder_name:
            return None
        return self._root / folder_name

    def list_mods(self) -> dict[str, str]:
        if not self._root.is_dir():
            return {}
        mods: dict[str, str] = {}
        for path in sorted(self._root.iterdir()):
            if not path.is_dir() or path.name.startswith("."):
                continue
            try:
                meta = self.get_metadata(path.name)
            except (OSError, ValueError) as exc:
                logger.debug("Unreadable metadata for %s: %s", path.name, exc)
                meta = None
            mods[path.name] = meta.name if meta is not None else path.name
        return mods

    def mod_exists(self, folder_name: str) -> bool:
        mod_dir = self._mod_dir(folder_name)
        return mod_dir is not None and mod_dir.is_dir()

    def get_metadata(self, folder_name: str) -> Optional[ModMetadata]:
        """
        Raises:
            ValueError: If meta.json exists but is not a JSON object.
            OSError: If meta.json cannot be read.
        """
        mod_dir = self._mod_dir(folder_name)
        if mod_dir is None or not mod_dir.is_dir():
            return None

        meta_path = mod_dir / METADATA_FILENAME
        if not meta_path.exists():
            return ModMetadata(name=folder_name)

        data = json.loads(meta_path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{meta_path} is not a JSON object")

        return ModMetadata(
            name=_text(data, "Name") or folder_name,
            author=_text(data, "Author"),
            version=_text(data, "Version"),
            description=_text(data, "Description"),
            website=_text(data, "Website"),
        )

    def install(
        self,
        folder_name: str,
        package_path: Path,
        progress: Optional[InstallProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> bool:
        """
        Extract `package_path` into `<root>/<folder_name>`, replacing any
        existing install only once extraction has completed.

        Returns False if the folder name or archive is unusable.

        Raises:
            OperationCancelled: If cancelled between files; the previous
                install is left untouched.
        """
        target = self._mod_dir(folder_name)
        if target is None:
            logger.warning("Refusing to install into invalid folder name %r", folder_name)
            return False

        self._root.mkdir(parents=True, exist_ok=True)
        staging = self._root / f".install-{uuid.uuid4().hex}"
        try:
            with zipfile.ZipFile(package_path, "r") as zf:
                members = [m for m in zf.infolist() if not m.is_dir()]
                total = len(members)
                for done, member in enumerate(members):
                    check_cancelled(cancel)
                    rel = _safe_member_path(member.filename)
                    if rel is None:
                        logger.warning("Package %s has unsafe entry %r", package_path, member.filename)
                        return False
                    out_path = staging.joinpath(*rel.parts)
                    out_path.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(member, "r") as src, open(out_path, "wb") as dst:
                        shutil.copyfileobj(src, dst, BUFFER_SIZE)
                    if progress:
                        progress(f"Extracting {rel.as_posix()}", done + 1, total)
            staging.mkdir(parents=True, exist_ok=True)
            self._swap_into_place(staging, target)
        except OperationCancelled:
            raise
        except (zipfile.BadZipFile, OSError) as exc:
            logger.warning("Install of %s into %s failed: %s", package_path, folder_name, exc)
            return False
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Installed %s into %s", package_path.name, folder_name)
        return True

    def _swap_into_place(self, staging: Path, target: Path) -> None:
        retired: Optional[Path] = None
        if target.exists():
            retired = self._root / f".retired-{uuid.uuid4().hex}"
            target.rename(retired)
        try:
            staging.rename(target)
        except OSError:
            if retired is not None:
                retired.rename(target)
            raise
        if retired is not None:
            shutil.rmtree(retired, ignore_errors=True)
