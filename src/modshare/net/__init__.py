"""
Network utilities: retry with exponential backoff and proxy config.
"""

from .retry import (
    RetryConfig,
    RetryableError,
    with_retry,
)
from .proxy import ProxyConfig, build_opener

__all__ = [
    "RetryConfig",
    "RetryableError",
    "with_retry",
    "ProxyConfig",
    "build_opener",
]
