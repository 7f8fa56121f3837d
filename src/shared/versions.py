"""
Best-effort ordering of free-form mod version strings.

Versions are opaque hints: "1.2.10" > "1.2.9", "v2" == "2", and anything
that is not dotted-numeric falls back to case-insensitive text comparison.
"""

from __future__ import annotations

import re
from typing import Optional

_NUMERIC_VERSION = re.compile(r"^\d+(\.\d+){0,3}$")


def _parse(value: str) -> Optional[tuple[int, ...]]:
    text = value.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    if not _NUMERIC_VERSION.match(text):
        return None
    parts = [int(p) for p in text.split(".")]
    # 1.2 == 1.2.0
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def compare_versions(a: Optional[str], b: Optional[str]) -> int:
    """Return -1, 0 or 1 as `a` sorts before, equal to, or after `b`."""
    a = (a or "").strip()
    b = (b or "").strip()

    pa, pb = _parse(a), _parse(b)
    if pa is not None and pb is not None:
        return (pa > pb) - (pa < pb)

    fa, fb = a.casefold(), b.casefold()
    return (fa > fb) - (fa < fb)


def is_newer(offered: Optional[str], installed: Optional[str]) -> bool:
    """True if both versions are known and `offered` sorts after `installed`."""
    if not (offered or "").strip() or not (installed or "").strip():
        return False
    return compare_versions(offered, installed) > 0
