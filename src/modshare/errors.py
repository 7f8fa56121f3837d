"""
Error taxonomy shared by the cache, transfer, upload, backup and queue layers.

Batch-level partial failure is reported through result objects
(BatchUploadResult, RestoreReport); the exceptions below abort a single unit
of work (one upload item, one restore entry) or reject an operation outright.
"""

from __future__ import annotations

from typing import Optional

from .net.retry import RetryableError


class ModShareError(Exception):
    """Base class for all errors raised by this package."""


class CacheWriteError(ModShareError):
    """The package cache could not materialize bytes on disk."""

    def __init__(self, digest: str, message: str) -> None:
        super().__init__(f"[{digest}] {message}")
        self.digest = digest


class TransportError(RetryableError, ModShareError):
    """
    Network or relay failure. Never retried automatically by the upload or
    restore paths; idempotent reads go through `with_retry`.
    """


class ForbiddenError(ModShareError):
    """The relay rejected the request for policy reasons (recipient, account)."""


class TooLargeError(ModShareError):
    """The payload exceeds the configured or relay-enforced size policy."""


class BusyError(ModShareError):
    """An operation of the same kind is already active."""


class OperationCancelled(ModShareError):
    """Cooperative cancellation reached an I/O or per-file boundary."""


class PackagePreparationError(ModShareError):
    """A local package could not be produced, hashed or cached for upload."""

    def __init__(self, folder_name: str, message: str) -> None:
        super().__init__(f"{folder_name}: {message}")
        self.folder_name = folder_name


class RestoreEntryFailed(ModShareError):
    """A restore halted at `index`; earlier entries stay installed."""

    def __init__(
        self,
        *,
        index: int,
        name: str,
        digest: str,
        reason: str,
        stage: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"restore failed at entry {index + 1} ({name}) during {stage}: {reason}")
        self.index = index
        self.name = name
        self.digest = digest
        self.reason = reason
        self.stage = stage
        self.cause = cause


class InstallError(ModShareError):
    """The host refused or failed to install a package into a folder."""

    def __init__(self, folder_name: str, message: str) -> None:
        super().__init__(f"{folder_name}: {message}")
        self.folder_name = folder_name


class UploadFailedError(ModShareError):
    """An upload batch ended with hard failures; names the offending packages."""

    def __init__(self, offending_names: list[str], offending_digests: list[str]) -> None:
        super().__init__("upload failed for: " + ", ".join(offending_names))
        self.offending_names = offending_names
        self.offending_digests = offending_digests
