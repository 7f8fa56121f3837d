from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def compute_runtime_s(
    started_at: Optional[datetime],
    finished_at: Optional[datetime],
    *,
    now: Optional[datetime] = None,
) -> float:
    """Seconds between start and finish (or `now` while still running); 0 if never started."""
    if started_at is None:
        return 0.0

    end = finished_at if finished_at is not None else (now or datetime.now(timezone.utc))
    return max(0.0, float((_ensure_utc(end) - _ensure_utc(started_at)).total_seconds()))


def compute_throughput(transferred_bytes: int, elapsed_s: float) -> float:
    """Bytes per second; 0 until some time has elapsed."""
    if elapsed_s <= 0:
        return 0.0
    return float(max(0, int(transferred_bytes))) / float(elapsed_s)


def compute_fraction(done: float, total: float) -> float:
    """`done / total` clamped to [0, 1]; an empty total counts as complete."""
    if total <= 0:
        return 1.0
    return max(0.0, min(1.0, float(done) / float(total)))


def compute_batch_fraction(completed: int, total: int, current_fraction: float) -> float:
    """
    Progress of a sequential batch:
    completed / total + current_fraction / total
    """
    if total <= 0:
        return 1.0
    current = max(0.0, min(1.0, float(current_fraction)))
    return compute_fraction(completed + current, total)
