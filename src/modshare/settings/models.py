from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..net.proxy import ProxyConfig
from ..net.retry import RetryConfig
from ..resolver.redownload import ResolverPolicy
from ..upload.coordinator import DEFAULT_MAX_UPLOAD_BYTES


DEFAULT_DATA_ROOT = "data"
DEFAULT_MOD_ROOT = "mods"


@dataclass(frozen=True)
class RelayAccount:
    account_id: str
    api_token: str = ""

    def is_complete(self) -> bool:
        return bool(self.account_id.strip())

    def to_persist_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"account_id": self.account_id}
        if self.api_token:
            data["api_token"] = self.api_token
        return data

    @classmethod
    def from_persist_dict(cls, data: dict[str, Any]) -> "RelayAccount":
        return cls(
            account_id=str(data.get("account_id", "") or ""),
            api_token=str(data.get("api_token", "") or ""),
        )


@dataclass
class GlobalSettings:
    account: Optional[RelayAccount] = None
    relay_url: str = ""
    data_root: str = DEFAULT_DATA_ROOT
    mod_root: str = DEFAULT_MOD_ROOT
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    delete_package_after_install: bool = False
    resolver: Optional[ResolverPolicy] = None
    retry: Optional[RetryConfig] = None
    proxy: Optional[ProxyConfig] = None

    def account_configured(self) -> bool:
        return self.account is not None and self.account.is_complete()

    def get_resolver(self) -> ResolverPolicy:
        return self.resolver or ResolverPolicy()

    def get_retry(self) -> RetryConfig:
        return self.retry or RetryConfig()

    def get_proxy(self) -> ProxyConfig:
        return self.proxy or ProxyConfig()

    def to_persist_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": 1,
            "relay_url": self.relay_url,
            "data_root": self.data_root,
            "mod_root": self.mod_root,
            "max_upload_bytes": self.max_upload_bytes,
            "delete_package_after_install": self.delete_package_after_install,
        }
        if self.account is not None:
            data["account"] = self.account.to_persist_dict()
        if self.resolver is not None:
            data["resolver"] = self.resolver.to_persist_dict()
        if self.retry is not None:
            data["retry"] = self.retry.to_persist_dict()
        if self.proxy is not None:
            data["proxy"] = self.proxy.to_persist_dict()
        return data

    @classmethod
    def from_persist_dict(cls, data: dict[str, Any]) -> "GlobalSettings":
        raw_account = data.get("account")
        account = RelayAccount.from_persist_dict(raw_account) if isinstance(raw_account, dict) else None

        try:
            max_upload_bytes = int(data.get("max_upload_bytes", DEFAULT_MAX_UPLOAD_BYTES))
        except (TypeError, ValueError):
            max_upload_bytes = DEFAULT_MAX_UPLOAD_BYTES
        if max_upload_bytes <= 0:
            max_upload_bytes = DEFAULT_MAX_UPLOAD_BYTES

        raw_resolver = data.get("resolver")
        raw_retry = data.get("retry")
        raw_proxy = data.get("proxy")

        return cls(
            account=account,
            relay_url=str(data.get("relay_url", "") or "").strip(),
            data_root=str(data.get("data_root", DEFAULT_DATA_ROOT) or DEFAULT_DATA_ROOT),
            mod_root=str(data.get("mod_root", DEFAULT_MOD_ROOT) or DEFAULT_MOD_ROOT),
            max_upload_bytes=max_upload_bytes,
            delete_package_after_install=bool(data.get("delete_package_after_install", False)),
            resolver=ResolverPolicy.from_persist_dict(raw_resolver) if isinstance(raw_resolver, dict) else None,
            retry=RetryConfig.from_persist_dict(raw_retry) if isinstance(raw_retry, dict) else None,
            proxy=ProxyConfig.from_persist_dict(raw_proxy) if isinstance(raw_proxy, dict) else None,
        )
