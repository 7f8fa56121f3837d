"""
Exponential backoff for idempotent relay reads (listings, history, downloads).

Uploads and backup mutations are never retried here: a failed upload is
reported in the batch result and retried, if at all, by the caller.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Set, TypeVar

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY_S = 1.0
DEFAULT_MAX_DELAY_S = 30.0
DEFAULT_JITTER_FACTOR = 0.25

# Relay statuses worth a second attempt
DEFAULT_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

T = TypeVar("T")
logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """
    Error raised by the relay transport.

    Attributes:
        status_code: HTTP status, or None for connection-level failures.
        should_retry: Whether `with_retry` may try again.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        should_retry: bool = True,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.should_retry = should_retry


@dataclass
class RetryConfig:
    """
    Backoff policy for idempotent relay requests.

    Attributes:
        max_retries: Extra attempts after the first (0 = single attempt).
        base_delay_s: Delay before the first retry.
        max_delay_s: Upper bound for any single delay.
        jitter_factor: Random jitter as a fraction of the computed delay.
        retryable_status_codes: Statuses that allow another attempt.
        enabled: If False, requests are attempted exactly once.
    """
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_s: float = DEFAULT_BASE_DELAY_S
    max_delay_s: float = DEFAULT_MAX_DELAY_S
    jitter_factor: float = DEFAULT_JITTER_FACTOR
    retryable_status_codes: Set[int] = field(
        default_factory=lambda: set(DEFAULT_RETRYABLE_STATUS_CODES)
    )
    enabled: bool = True

    def to_persist_dict(self) -> dict:
        return {
            "max_retries": self.max_retries,
            "base_delay_s": self.base_delay_s,
            "max_delay_s": self.max_delay_s,
            "jitter_factor": self.jitter_factor,
            "retryable_status_codes": sorted(self.retryable_status_codes),
            "enabled": self.enabled,
        }

    @classmethod
    def from_persist_dict(cls, data: dict) -> "RetryConfig":
        max_retries = _coerce(int, data.get("max_retries"), DEFAULT_MAX_RETRIES)
        base_delay = _coerce(float, data.get("base_delay_s"), DEFAULT_BASE_DELAY_S)
        max_delay = _coerce(float, data.get("max_delay_s"), DEFAULT_MAX_DELAY_S)
        jitter_factor = _coerce(float, data.get("jitter_factor"), DEFAULT_JITTER_FACTOR)

        parsed_codes: Set[int] = set()
        status_codes = data.get("retryable_status_codes")
        if isinstance(status_codes, (list, tuple)):
            for code in status_codes:
                try:
                    parsed_codes.add(int(code))
                except (TypeError, ValueError):
                    pass
        if not parsed_codes:
            parsed_codes = set(DEFAULT_RETRYABLE_STATUS_CODES)

        return cls(
            max_retries=max(0, max_retries),
            base_delay_s=max(0.0, base_delay),
            max_delay_s=max(0.0, max_delay),
            jitter_factor=max(0.0, min(1.0, jitter_factor)),
            retryable_status_codes=parsed_codes,
            enabled=bool(data.get("enabled", True)),
        )

    def compute_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-indexed): base * 2^attempt, capped, plus jitter."""
        delay = min(self.base_delay_s * (2 ** attempt), self.max_delay_s)
        return delay + delay * random.uniform(0, self.jitter_factor)

    def should_retry(self, exc: RetryableError) -> bool:
        if not exc.should_retry:
            return False
        # Connection-level failures carry no status
        return exc.status_code is None or exc.status_code in self.retryable_status_codes


def _coerce(kind, value, default):
    if value is None:
        return default
    try:
        return kind(value)
    except (TypeError, ValueError):
        return default


def with_retry(
    func: Callable[[], T],
    *,
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `func` until it succeeds, fails with a non-retryable error, or the
    retry budget is exhausted.

    Only RetryableError is retried; any other exception propagates at once.

    Args:
        func: Zero-argument callable performing one request.
        config: Backoff policy (defaults to RetryConfig()).
        on_retry: Called before each retry with (attempt, exception, delay).
        sleep: Injected for tests.

    Raises:
        The last exception if all attempts fail.
    """
    cfg = config or RetryConfig()
    if not cfg.enabled:
        return func()

    attempt = 0
    while True:
        try:
            return func()
        except RetryableError as exc:
            if attempt >= cfg.max_retries or not cfg.should_retry(exc):
                raise
            delay = cfg.compute_delay(attempt)
            if on_retry:
                on_retry(attempt, exc, delay)
            else:
                logger.warning(
                    "Retry %d/%d after %.2fs: %s",
                    attempt + 1,
                    cfg.max_retries,
                    delay,
                    exc,
                )
            sleep(delay)
            attempt += 1
