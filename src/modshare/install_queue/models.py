from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from src.modshare.backup.models import PackageEntry
from src.modshare.fs.hashing import normalize_digest
from src.modshare.transfer.channel import IncomingOffer


class InstallState(str, Enum):
    """
    Pending -> Queued -> Installing -> Installed | Failed

    Installed notifications leave the pending list; Failed ones stay pending.
    """
    PENDING = "Pending"
    QUEUED = "Queued"
    INSTALLING = "Installing"
    INSTALLED = "Installed"
    FAILED = "Failed"

    def is_locked(self) -> bool:
        return self in (InstallState.QUEUED, InstallState.INSTALLING)


@dataclass(frozen=True)
class TransferNotification:
    """One inbound package offer."""
    digest: str
    sender_id: str
    sender_display_hint: str
    install_folder_name: Optional[str] = None
    package_info: Optional[PackageEntry] = None

    @property
    def folder_hint(self) -> Optional[str]:
        """Folder name the sender installed the package under, if known."""
        if self.install_folder_name and self.install_folder_name.strip():
            return self.install_folder_name.strip()
        if self.package_info is not None and self.package_info.install_folder_name:
            return self.package_info.install_folder_name
        return None

    @property
    def display_name(self) -> str:
        if self.package_info is not None and self.package_info.display_name:
            return self.package_info.display_name
        return self.folder_hint or self.digest

    @classmethod
    def from_offer(cls, offer: IncomingOffer) -> "TransferNotification":
        return cls(
            digest=offer.digest,
            sender_id=offer.sender_id,
            sender_display_hint=offer.sender_display_hint,
            install_folder_name=offer.package.install_folder_name if offer.package else None,
            package_info=offer.package,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransferNotification":
        package = data.get("package_info")
        digest = normalize_digest(data.get("digest"))
        if not digest:
            raise ValueError("notification requires a digest")
        sender_id = str(data.get("sender_id") or "").strip()
        return cls(
            digest=digest,
            sender_id=sender_id,
            sender_display_hint=str(data.get("sender_display_hint") or sender_id),
            install_folder_name=(data.get("install_folder_name") or None),
            package_info=PackageEntry.from_dict(package) if isinstance(package, dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "digest": self.digest,
            "sender_id": self.sender_id,
            "sender_display_hint": self.sender_display_hint,
            "install_folder_name": self.install_folder_name,
            "package_info": self.package_info.to_dict() if self.package_info else None,
        }


@dataclass(frozen=True)
class ModStatus:
    """Advisory install status of a folder, from the last status refresh."""
    is_installed: bool
    version: Optional[str] = None
