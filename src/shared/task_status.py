"""
Status of a background operation (upload batch, redownload, backup work).

    Idle -> Running -> Done | Failed | Cancelled

Cancelled is a terminal status of its own, not a kind of failure.
"""

from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    DONE = "Done"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    def is_active(self) -> bool:
        return self is TaskStatus.RUNNING

    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.CANCELLED)
