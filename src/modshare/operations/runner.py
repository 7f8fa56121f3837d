from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from src.modshare.backup.models import utc_now
from src.modshare.cancellation import CancellationToken
from src.modshare.errors import BusyError, ModShareError, OperationCancelled
from src.shared.task_status import TaskStatus

from .models import Operation, OperationKind, new_operation

# (operation, cancel token, progress reporter) -> result payload
OperationFn = Callable[[Operation, CancellationToken, Callable[[dict[str, Any]], None]], Awaitable[Optional[dict[str, Any]]]]

logger = logging.getLogger(__name__)


class OperationRunner:
    """
    Hosts long-running work started from the API.

    - One active operation per kind (upload / redownload / backup)
    - Concurrent starts are rejected with BusyError, never queued
    - Each operation owns a CancellationToken
    - Records are persisted as <runs_dir>/<operation_id>.json
    """

    def __init__(self, *, runs_dir: Path) -> None:
        self._runs_dir = Path(runs_dir)
        self._lock = asyncio.Lock()
        self._operations: dict[str, Operation] = {}
        self._active_by_kind: dict[OperationKind, str] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    async def start(self, kind: OperationKind, description: str, fn: OperationFn) -> Operation:
        async with self._lock:
            active_id = self._active_by_kind.get(kind)
            if active_id is not None:
                raise BusyError(f"a {kind.value} operation is already running ({active_id})")

            operation = new_operation(str(uuid.uuid4()), kind, description)
            token = CancellationToken()
            self._operations[operation.operation_id] = operation
            self._active_by_kind[kind] = operation.operation_id
            self._tokens[operation.operation_id] = token
            self._persist(operation)

            task = asyncio.create_task(
                self._run_wrapper(operation, token, fn),
                name=f"modshare-{kind.value}-{operation.operation_id}",
            )
            self._tasks[operation.operation_id] = task
            return operation

    async def cancel(self, operation_id: str) -> TaskStatus:
        async with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None:
                raise KeyError(operation_id)
            if operation.status == TaskStatus.RUNNING:
                token = self._tokens.get(operation_id)
                if token is not None:
                    token.cancel("cancelled by user")
            # The wrapper settles the final status at the next boundary
            return operation.status

    async def get(self, operation_id: str) -> Optional[Operation]:
        async with self._lock:
            return self._operations.get(operation_id)

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            operations = sorted(self._operations.values(), key=lambda o: o.created_at, reverse=True)
            return {
                "active": {kind.value: op_id for kind, op_id in self._active_by_kind.items()},
                "operations": [o.to_public_dict() for o in operations],
            }

    async def wait(self, operation_id: str) -> Operation:
        task = self._tasks.get(operation_id)
        if task is not None:
            await asyncio.shield(task)
        operation = self._operations.get(operation_id)
        if operation is None:
            raise KeyError(operation_id)
        return operation

    async def shutdown(self) -> None:
        """Cancel all running operations and wait for them to settle."""
        for token in list(self._tokens.values()):
            token.cancel("shutting down")
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------

    def _persist(self, operation: Operation) -> None:
        try:
            self._runs_dir.mkdir(parents=True, exist_ok=True)
            path = self._runs_dir / f"{operation.operation_id}.json"
            path.write_text(json.dumps(operation.to_public_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError as exc:
            # In-memory state stays authoritative
            logger.debug("Failed to persist operation %s: %s", operation.operation_id, exc)

    async def _run_wrapper(self, operation: Operation, token: CancellationToken, fn: OperationFn) -> None:
        def report(progress: dict[str, Any]) -> None:
            operation.progress = progress

        final_status: TaskStatus
        error: Optional[str] = None
        try:
            result = await fn(operation, token, report)
            if result is not None:
                operation.result = result
            final_status = TaskStatus.DONE
        except (OperationCancelled, asyncio.CancelledError):
            final_status = TaskStatus.CANCELLED
        except ModShareError as exc:
            final_status = TaskStatus.FAILED
            error = str(exc)
            logger.warning("Operation %s failed: %s", operation.operation_id, exc)
        except Exception as exc:
            final_status = TaskStatus.FAILED
            error = f"{operation.kind.value} failed unexpectedly"
            logger.exception("Operation %s crashed: %s", operation.operation_id, exc)

        await self._finish(operation, final_status=final_status, error=error)

    async def _finish(self, operation: Operation, *, final_status: TaskStatus, error: Optional[str]) -> None:
        async with self._lock:
            operation.status = final_status
            operation.error = error
            operation.updated_at = utc_now()
            self._persist(operation)

            self._tasks.pop(operation.operation_id, None)
            self._tokens.pop(operation.operation_id, None)
            if self._active_by_kind.get(operation.kind) == operation.operation_id:
                self._active_by_kind.pop(operation.kind, None)
