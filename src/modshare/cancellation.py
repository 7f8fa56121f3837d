"""
Cooperative cancellation shared between the event loop and worker threads.

Hashing, archiving and HTTP transfers run in threads (`asyncio.to_thread`),
so the token is backed by a `threading.Event` rather than asyncio state.
"""

from __future__ import annotations

import threading
from typing import Optional

from .errors import OperationCancelled


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason or "cancelled")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """Raise OperationCancelled if `token` is set; a missing token never cancels."""
    if token is not None:
        token.raise_if_cancelled()
