"""
Install capability of the host mod manager.

The core only calls this interface; installing, listing and reading
metadata belong to the host. Calls are blocking and are made from worker
threads.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from src.modshare.cancellation import CancellationToken

# (message, done_steps, total_steps)
InstallProgressCallback = Callable[[str, int, int], None]


@dataclass(frozen=True)
class ModMetadata:
    name: str
    author: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "author": self.author,
            "version": self.version,
            "description": self.description,
            "website": self.website,
        }


class ModHost(Protocol):
    def list_mods(self) -> dict[str, str]:
        """Installed mods as {folder name: display name}."""
        ...

    def mod_exists(self, folder_name: str) -> bool:
        ...

    def get_metadata(self, folder_name: str) -> Optional[ModMetadata]:
        """None if the mod is unknown; raises if the lookup itself fails."""
        ...

    def get_install_root(self) -> Optional[Path]:
        ...

    def install(
        self,
        folder_name: str,
        package_path: Path,
        progress: Optional[InstallProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> bool:
        ...
