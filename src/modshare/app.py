from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI

from .backup.api import create_backup_router
from .backup.manager import BackupManager
from .cache.package_cache import PackageCache
from .downloader.downloader import PackageDownloader
from .events import EventBus
from .fs import StorageManager
from .history.api import create_history_router
from .history.service import TransferHistory
from .host.api import create_mods_router
from .host.directory_host import DirectoryModHost
from .install_queue.api import create_install_queue_router
from .install_queue.queue import InstallQueue
from .operations.api import create_operations_router
from .operations.runner import OperationRunner
from .resolver.service import PackageInstaller, RedownloadService
from .settings.api import create_settings_router
from .settings.models import GlobalSettings
from .settings.store import SettingsStore
from .transfer.channel import TransferChannel
from .transfer.http_channel import HttpTransferChannel, RelayCredentials
from .transfer.local_channel import LocalTransferChannel
from .upload.coordinator import UploadCoordinator
from .upload.sources import PackageSourceResolver

LOCAL_ACCOUNT_ID = "local"

logger = logging.getLogger(__name__)


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _under(repo_root: Path, raw: str) -> Path:
    p = Path(raw).expanduser()
    return p if p.is_absolute() else repo_root / p


def create_channel(settings: GlobalSettings, *, data_root: Path) -> TransferChannel:
    """HTTP relay when a relay URL is configured, else a relay directory under the data root."""
    account = settings.account
    if settings.relay_url and settings.account_configured():
        return HttpTransferChannel(
            settings.relay_url,
            RelayCredentials(account_id=account.account_id, api_token=account.api_token),
            retry=settings.get_retry(),
            proxy=settings.get_proxy(),
        )
    if settings.relay_url:
        logger.warning("Relay URL is set but no account is configured; using the local relay")

    account_id = account.account_id if account and account.is_complete() else LOCAL_ACCOUNT_ID
    return LocalTransferChannel(data_root / "relay", account_id, max_upload_bytes=settings.max_upload_bytes)


def create_app() -> FastAPI:
    repo_root = _repo_root()
    config_path = repo_root / "data" / "config.json"

    store = SettingsStore(path=config_path)
    settings = store.load_effective()

    storage = StorageManager(data_root=_under(repo_root, settings.data_root))
    paths = storage.ensure_dirs()
    cache = PackageCache(paths.cache)
    cache.purge_partials()
    host = DirectoryModHost(_under(repo_root, settings.mod_root))
    channel = create_channel(settings, data_root=paths.root)

    bus = EventBus()
    runner = OperationRunner(runs_dir=paths.runs)
    downloader = PackageDownloader(cache=cache, channel=channel)
    installer = PackageInstaller(downloader=downloader, host=host, policy=settings.get_resolver())
    redownloader = RedownloadService(
        installer=installer,
        cache=cache,
        delete_package_after_install=settings.delete_package_after_install,
    )
    coordinator = UploadCoordinator(
        cache=cache,
        channel=channel,
        sources=PackageSourceResolver(host=host, storage=storage),
        max_upload_bytes=settings.max_upload_bytes,
    )
    backups = BackupManager(channel=channel, coordinator=coordinator, installer=installer)
    queue = InstallQueue(
        installer=installer,
        channel=channel,
        host=host,
        bus=bus,
        cache=cache,
        delete_package_after_install=settings.delete_package_after_install,
    )
    history = TransferHistory(channel=channel)

    app = FastAPI(title="modshare")
    app.include_router(create_settings_router(store=store, repo_root=repo_root))
    app.include_router(create_operations_router(runner=runner, coordinator=coordinator, redownloader=redownloader))
    app.include_router(create_backup_router(manager=backups, runner=runner))
    app.include_router(create_install_queue_router(queue=queue, channel=channel, bus=bus))
    app.include_router(create_history_router(history=history))
    app.include_router(create_mods_router(host=host))

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        queue.cancel_batch("shutting down")
        await runner.shutdown()

    app.state.settings_store = store
    app.state.storage = storage
    app.state.cache = cache
    app.state.host = host
    app.state.channel = channel
    app.state.bus = bus
    app.state.runner = runner
    app.state.coordinator = coordinator
    app.state.redownloader = redownloader
    app.state.backups = backups
    app.state.install_queue = queue
    app.state.history = history
    app.state.repo_root = repo_root
    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(app, host="127.0.0.1", port=int(os.environ.get("MODSHARE_PORT", "8000")))
