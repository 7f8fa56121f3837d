"""
Receive-side pipeline shared by redownload, restore and the install queue:
download into the cache, resolve the install folder, install through the host.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from src.modshare.cache.package_cache import CacheRecord, PackageCache
from src.modshare.cancellation import CancellationToken, check_cancelled
from src.modshare.downloader.downloader import DownloadResult, DownloadStatus, PackageDownloader
from src.modshare.errors import BusyError, InstallError
from src.modshare.host.capability import InstallProgressCallback, ModHost
from src.modshare.transfer.channel import ProgressCallback

from .redownload import Resolution, ResolutionRule, ResolveRequest, ResolverPolicy, resolve_install_folder
from .snapshot import capture_snapshot

logger = logging.getLogger(__name__)

# (stage, fraction of the current package in [0, 1])
StageProgressCallback = Callable[[str, float], None]


@dataclass(frozen=True)
class InstallOutcome:
    digest: str
    folder_name: str
    rule: ResolutionRule
    downloaded: bool

    def to_dict(self) -> dict:
        return {
            "digest": self.digest,
            "folder_name": self.folder_name,
            "rule": self.rule.value,
            "downloaded": self.downloaded,
        }


class PackageInstaller:
    def __init__(
        self,
        *,
        downloader: PackageDownloader,
        host: ModHost,
        policy: Optional[ResolverPolicy] = None,
    ):
        self._downloader = downloader
        self._host = host
        self._policy = policy or ResolverPolicy()

    async def fetch(
        self,
        digest: str,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> DownloadResult:
        return await asyncio.to_thread(
            self._downloader.download_to_cache, digest, progress=progress, cancel=cancel
        )

    async def resolve(
        self,
        request: ResolveRequest,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> Resolution:
        snapshot = await asyncio.to_thread(capture_snapshot, self._host, request, cancel=cancel)
        resolution = resolve_install_folder(request, snapshot, self._policy)
        logger.debug("Resolved %s to %s via %s", request.digest, resolution.folder_name, resolution.rule.value)
        return resolution

    async def install(
        self,
        folder_name: str,
        record: CacheRecord,
        *,
        progress: Optional[InstallProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        """
        Raises:
            InstallError: If the host reports failure.
        """
        check_cancelled(cancel)
        ok = await asyncio.to_thread(self._host.install, folder_name, record.local_path, progress, cancel)
        if not ok:
            raise InstallError(folder_name, "host failed to install the package")

    async def run(
        self,
        request: ResolveRequest,
        *,
        progress: Optional[StageProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> tuple[InstallOutcome, CacheRecord]:
        """Download, resolve and install one package."""

        def on_download(transferred: int, total: int) -> None:
            if progress and total > 0:
                progress("download", min(1.0, transferred / total))

        def on_install(_message: str, done: int, total: int) -> None:
            if progress and total > 0:
                progress("install", min(1.0, done / total))

        fetched = await self.fetch(request.digest, progress=on_download, cancel=cancel)
        resolution = await self.resolve(request, cancel=cancel)
        await self.install(resolution.folder_name, fetched.record, progress=on_install, cancel=cancel)

        outcome = InstallOutcome(
            digest=fetched.record.digest,
            folder_name=resolution.folder_name,
            rule=resolution.rule,
            downloaded=fetched.status == DownloadStatus.DOWNLOADED,
        )
        return outcome, fetched.record


class RedownloadService:
    """Re-download a previously seen package and install it; one at a time."""

    def __init__(
        self,
        *,
        installer: PackageInstaller,
        cache: PackageCache,
        delete_package_after_install: bool = False,
    ):
        self._installer = installer
        self._cache = cache
        self._delete_after_install = delete_package_after_install
        self._active = False

    @property
    def busy(self) -> bool:
        return self._active

    async def redownload(
        self,
        digest: str,
        *,
        name: Optional[str] = None,
        author: Optional[str] = None,
        version: Optional[str] = None,
        progress: Optional[StageProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> InstallOutcome:
        """
        Raises:
            BusyError: If a redownload is already running.
            TransportError / CacheWriteError / InstallError: On failure.
            OperationCancelled: If cancelled.
        """
        if self._active:
            raise BusyError("a redownload is already in progress")
        if not digest or not digest.strip():
            raise ValueError("digest must not be empty")

        self._active = True
        try:
            request = ResolveRequest(digest=digest, name_hint=name, author_hint=author, version_hint=version)
            outcome, record = await self._installer.run(request, progress=progress, cancel=cancel)
            logger.info("Redownloaded %s into %s", outcome.digest, outcome.folder_name)

            # Only the download path takes an ownership; a cache hit is someone else's
            if self._delete_after_install and outcome.downloaded:
                self._cache.release(record)
            return outcome
        finally:
            self._active = False
