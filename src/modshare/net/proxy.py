"""
Optional HTTP(S) proxy for relay requests.
"""

from __future__ import annotations

import urllib.request
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlparse


# urllib's ProxyHandler speaks plain HTTP proxies only
SUPPORTED_SCHEMES = frozenset({"http", "https"})


@dataclass
class ProxyConfig:
    """
    Proxy configuration.

    Attributes:
        enabled: Whether relay requests go through the proxy.
        url: Proxy URL (e.g., "http://host:port").
    """
    enabled: bool = False
    url: str = ""

    def is_active(self) -> bool:
        return self.enabled and bool(self.url.strip())

    def get_url(self) -> Optional[str]:
        return self.url.strip() if self.is_active() else None

    def to_persist_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "url": self.url}

    @classmethod
    def from_persist_dict(cls, data: dict[str, Any]) -> "ProxyConfig":
        return cls(
            enabled=bool(data.get("enabled", False)),
            url=str(data.get("url", "") or ""),
        )

    def validate(self) -> tuple[bool, str]:
        """
        Validate the proxy configuration.

        Returns:
            (is_valid, error_message) tuple.
        """
        if not self.enabled:
            return True, ""

        url = self.url.strip()
        if not url:
            return False, "Proxy is enabled but URL is empty"

        parsed = urlparse(url)
        if not parsed.scheme:
            return False, "Proxy URL must include scheme (e.g., http://)"
        if parsed.scheme.lower() not in SUPPORTED_SCHEMES:
            return False, f"Unsupported proxy scheme: {parsed.scheme}. Use: {', '.join(sorted(SUPPORTED_SCHEMES))}"
        if not parsed.netloc:
            return False, "Proxy URL must include host (and optionally port)"

        return True, ""


def get_urllib_proxy_handlers(config: Optional[ProxyConfig]) -> dict[str, str]:
    """
    Proxy mapping for urllib.request.ProxyHandler.

    Returns an empty dict when no proxy is active, which disables the
    environment-variable proxies as well.
    """
    url = config.get_url() if config is not None else None
    if not url:
        return {}
    return {"http": url, "https": url}


def build_opener(config: Optional[ProxyConfig]) -> urllib.request.OpenerDirector:
    """urllib opener honouring `config`."""
    return urllib.request.build_opener(
        urllib.request.ProxyHandler(get_urllib_proxy_handlers(config))
    )
