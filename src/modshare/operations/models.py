from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from src.modshare.backup.models import format_utc_z, utc_now
from src.shared.stats.metrics import compute_runtime_s
from src.shared.task_status import TaskStatus


class OperationKind(str, Enum):
    UPLOAD = "upload"
    REDOWNLOAD = "redownload"
    BACKUP = "backup"


@dataclass
class Operation:
    operation_id: str
    kind: OperationKind
    description: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    progress: dict[str, Any] = field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def runtime_s(self) -> float:
        finished = self.updated_at if self.status.is_terminal() else None
        return compute_runtime_s(self.created_at, finished)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind.value,
            "description": self.description,
            "status": self.status.value,
            "created_at": format_utc_z(self.created_at),
            "updated_at": format_utc_z(self.updated_at),
            "runtime_s": round(self.runtime_s(), 3),
            "progress": dict(self.progress),
            "result": self.result,
            "error": self.error,
        }


def new_operation(operation_id: str, kind: OperationKind, description: str) -> Operation:
    now = utc_now()
    return Operation(
        operation_id=operation_id,
        kind=kind,
        description=description,
        status=TaskStatus.RUNNING,
        created_at=now,
        updated_at=now,
    )
