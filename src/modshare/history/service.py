"""Per-account transfer history and resharing of packages already on the relay."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from src.modshare.backup.models import PackageEntry
from src.modshare.fs.hashing import normalize_digest
from src.modshare.transfer.channel import TransferChannel, TransferRecord

logger = logging.getLogger(__name__)

DIRECTIONS = ("upload", "download")


def entry_from_record(record: TransferRecord) -> PackageEntry:
    return PackageEntry(
        digest=record.digest,
        install_folder_name=record.name,
        display_name=record.name or record.digest,
        author=record.author,
        version=record.version,
    )


class TransferHistory:
    def __init__(self, *, channel: TransferChannel):
        self._channel = channel

    async def records(self, direction: str) -> list[TransferRecord]:
        """Newest first."""
        if direction not in DIRECTIONS:
            raise ValueError(f"unknown history direction: {direction}")
        records = await asyncio.to_thread(self._channel.list_history, direction)
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    async def uploads(self) -> list[TransferRecord]:
        return await self.records("upload")

    async def downloads(self) -> list[TransferRecord]:
        return await self.records("download")

    async def find(self, digest: str) -> Optional[TransferRecord]:
        key = normalize_digest(digest)
        for direction in DIRECTIONS:
            for record in await self.records(direction):
                if record.digest == key:
                    return record
        return None

    async def reshare(self, digest: str, recipients: Sequence[str]) -> PackageEntry:
        """
        Offer a package from the history to more recipients without
        uploading its bytes again.

        Raises:
            ValueError: If no recipient is given.
            KeyError: If the digest does not appear in the history.
            TransportError: If the relay no longer stores the package.
        """
        targets = list(dict.fromkeys(r.strip() for r in recipients if r and r.strip()))
        if not targets:
            raise ValueError("at least one recipient is required")

        record = await self.find(digest)
        if record is None:
            raise KeyError(normalize_digest(digest))

        entry = entry_from_record(record)
        await asyncio.to_thread(self._channel.offer, entry.digest, targets, entry)
        logger.info("Reshared %s with %d recipient(s)", entry.digest, len(targets))
        return entry
