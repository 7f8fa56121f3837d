"""
Settings API. Changes are persisted immediately and picked up by the
services on the next application start.
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from ..net.proxy import ProxyConfig
from ..net.retry import RetryConfig
from ..resolver.redownload import ResolverPolicy
from .models import GlobalSettings, RelayAccount
from .store import SettingsStore


class AccountIn(BaseModel):
    account_id: str = Field(min_length=1)
    api_token: Optional[str] = None


class RelayIn(BaseModel):
    relay_url: str = ""


class DirectoryIn(BaseModel):
    path: str = Field(min_length=1)


class TransferIn(BaseModel):
    max_upload_bytes: int = Field(ge=1)
    delete_package_after_install: bool = False


class ResolverIn(BaseModel):
    name_weight: int = Field(ge=0, le=100, default=2)
    author_weight: int = Field(ge=0, le=100, default=2)
    version_weight: int = Field(ge=0, le=100, default=1)
    metadata_failure_penalty: int = Field(ge=0, le=100, default=1)


class RetryIn(BaseModel):
    max_retries: int = Field(ge=0, le=10, default=2)
    base_delay_s: float = Field(ge=0.0, le=60.0, default=1.0)
    max_delay_s: float = Field(ge=0.0, le=300.0, default=30.0)
    enabled: bool = True


class ProxyIn(BaseModel):
    enabled: bool = False
    url: str = ""


class AccountStatusOut(BaseModel):
    configured: bool
    account_id: Optional[str] = None
    api_token_set: bool


class ResolverOut(BaseModel):
    name_weight: int
    author_weight: int
    version_weight: int
    metadata_failure_penalty: int


class RetryOut(BaseModel):
    max_retries: int
    base_delay_s: float
    max_delay_s: float
    enabled: bool


class ProxyOut(BaseModel):
    enabled: bool
    url_configured: bool  # Don't expose actual URL


class SettingsOut(BaseModel):
    account: AccountStatusOut
    relay_url: str
    data_root: str
    mod_root: str
    max_upload_bytes: int
    delete_package_after_install: bool
    resolver: ResolverOut
    retry: RetryOut
    proxy: ProxyOut
    restart_required: list[str] = Field(default_factory=list)


def _public_settings(settings: GlobalSettings, restart_required: Optional[list[str]] = None) -> SettingsOut:
    account = settings.account
    resolver = settings.get_resolver()
    retry = settings.get_retry()
    proxy = settings.get_proxy()

    return SettingsOut(
        account=AccountStatusOut(
            configured=settings.account_configured(),
            account_id=account.account_id if account else None,
            api_token_set=bool(account and account.api_token.strip()),
        ),
        relay_url=settings.relay_url,
        data_root=settings.data_root,
        mod_root=settings.mod_root,
        max_upload_bytes=settings.max_upload_bytes,
        delete_package_after_install=settings.delete_package_after_install,
        resolver=ResolverOut(
            name_weight=resolver.name_weight,
            author_weight=resolver.author_weight,
            version_weight=resolver.version_weight,
            metadata_failure_penalty=resolver.metadata_failure_penalty,
        ),
        retry=RetryOut(
            max_retries=retry.max_retries,
            base_delay_s=retry.base_delay_s,
            max_delay_s=retry.max_delay_s,
            enabled=retry.enabled,
        ),
        proxy=ProxyOut(
            enabled=proxy.enabled,
            url_configured=bool(proxy.url.strip()),
        ),
        restart_required=restart_required or [],
    )


def resolve_directory(raw: str, *, repo_root: Path) -> Path:
    raw = raw.strip()
    if not raw:
        raise ValueError("directory must not be empty")

    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = (repo_root / p).resolve()
    return p


def ensure_dir_writable(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ValueError(f"cannot create directory: {exc}") from exc

    if not path.is_dir():
        raise ValueError(f"{path} is not a directory")

    try:
        with tempfile.NamedTemporaryFile(prefix=".modshare_write_test_", dir=str(path), delete=True):
            pass
    except OSError as exc:
        raise ValueError(f"directory is not writable: {exc}") from exc


def create_settings_router(*, store: SettingsStore, repo_root: Path) -> APIRouter:
    router = APIRouter(prefix="/api/settings", tags=["settings"])

    def _out(settings: GlobalSettings) -> SettingsOut:
        return _public_settings(settings, store.pending_restart())

    def _set_directory(key: str, body: DirectoryIn) -> SettingsOut:
        try:
            path = resolve_directory(body.path, repo_root=repo_root)
            ensure_dir_writable(path)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _out(store.set_value(key=key, value=str(path)))

    @router.get("", response_model=SettingsOut)
    def get_settings() -> SettingsOut:
        return _out(store.load())

    @router.post("/account", response_model=SettingsOut)
    def set_account(body: AccountIn) -> SettingsOut:
        account = RelayAccount(account_id=body.account_id.strip(), api_token=(body.api_token or "").strip())
        return _out(store.set_value(key="account", value=account))

    @router.delete("/account", response_model=SettingsOut)
    def clear_account() -> SettingsOut:
        return _out(store.clear_account())

    @router.post("/relay", response_model=SettingsOut)
    def set_relay(body: RelayIn) -> SettingsOut:
        url = body.relay_url.strip()
        if url:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise HTTPException(status_code=400, detail="relay URL must be http(s)://host[:port]")
        return _out(store.set_value(key="relay_url", value=url))

    @router.post("/data-root", response_model=SettingsOut)
    def set_data_root(body: DirectoryIn) -> SettingsOut:
        return _set_directory("data_root", body)

    @router.post("/mod-root", response_model=SettingsOut)
    def set_mod_root(body: DirectoryIn) -> SettingsOut:
        return _set_directory("mod_root", body)

    @router.post("/transfer", response_model=SettingsOut)
    def set_transfer(body: TransferIn) -> SettingsOut:
        def mutate(settings: GlobalSettings) -> GlobalSettings:
            settings.max_upload_bytes = body.max_upload_bytes
            settings.delete_package_after_install = body.delete_package_after_install
            return settings

        return _out(store.update(mutator=mutate))

    @router.post("/resolver", response_model=SettingsOut)
    def set_resolver(body: ResolverIn) -> SettingsOut:
        policy = ResolverPolicy(
            name_weight=body.name_weight,
            author_weight=body.author_weight,
            version_weight=body.version_weight,
            metadata_failure_penalty=body.metadata_failure_penalty,
        )
        return _out(store.set_value(key="resolver", value=policy))

    @router.post("/retry", response_model=SettingsOut)
    def set_retry(body: RetryIn) -> SettingsOut:
        retry = RetryConfig(
            max_retries=body.max_retries,
            base_delay_s=body.base_delay_s,
            max_delay_s=body.max_delay_s,
            enabled=body.enabled,
        )
        return _out(store.set_value(key="retry", value=retry))

    @router.post("/proxy", response_model=SettingsOut)
    def set_proxy(body: ProxyIn) -> SettingsOut:
        proxy = ProxyConfig(enabled=body.enabled, url=body.url.strip())

        is_valid, error = proxy.validate()
        if not is_valid:
            raise HTTPException(status_code=400, detail=error)

        return _out(store.set_value(key="proxy", value=proxy))

    @router.delete("/proxy", response_model=SettingsOut)
    def clear_proxy() -> SettingsOut:
        return _out(store.set_value(key="proxy", value=ProxyConfig(enabled=False, url="")))

    return router
