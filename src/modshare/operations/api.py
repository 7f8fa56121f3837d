from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from src.modshare.errors import BusyError, UploadFailedError
from src.modshare.resolver.service import RedownloadService
from src.modshare.upload.coordinator import UploadCoordinator
from src.shared.task_status import TaskStatus

from .models import Operation, OperationKind
from .runner import OperationRunner


class UploadIn(BaseModel):
    folders: list[str] = Field(min_length=1)
    recipients: list[str] = Field(min_length=1)
    snapshot: bool = False


class RedownloadIn(BaseModel):
    digest: str = Field(min_length=1)
    name: Optional[str] = None
    author: Optional[str] = None
    version: Optional[str] = None


class OperationOut(BaseModel):
    operation_id: str
    kind: str
    description: str
    status: TaskStatus
    created_at: str
    updated_at: str
    runtime_s: float = 0.0
    progress: dict[str, Any] = Field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class OperationsSnapshotOut(BaseModel):
    active: dict[str, str]
    operations: list[OperationOut]


class CancelOut(BaseModel):
    operation_id: str
    status: TaskStatus


def _out(operation: Operation) -> OperationOut:
    return OperationOut(**operation.to_public_dict())


def _clean(values: list[str]) -> list[str]:
    return [v.strip() for v in values if v and v.strip()]


def create_operations_router(
    *,
    runner: OperationRunner,
    coordinator: UploadCoordinator,
    redownloader: RedownloadService,
) -> APIRouter:
    router = APIRouter(prefix="/api/operations", tags=["operations"])

    @router.get("", response_model=OperationsSnapshotOut)
    async def list_operations() -> OperationsSnapshotOut:
        snap = await runner.snapshot()
        return OperationsSnapshotOut(
            active=snap["active"],
            operations=[OperationOut(**o) for o in snap["operations"]],
        )

    @router.get("/{operation_id}", response_model=OperationOut)
    async def get_operation(operation_id: str) -> OperationOut:
        operation = await runner.get(operation_id)
        if operation is None:
            raise HTTPException(status_code=404, detail="operation not found")
        return _out(operation)

    @router.post("/{operation_id}/cancel", response_model=CancelOut)
    async def cancel_operation(operation_id: str) -> CancelOut:
        try:
            status = await runner.cancel(operation_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="operation not found") from exc
        return CancelOut(operation_id=operation_id, status=status)

    @router.post("/upload", response_model=OperationOut)
    async def start_upload(body: UploadIn) -> OperationOut:
        folders = _clean(body.folders)
        recipients = _clean(body.recipients)
        if not folders or not recipients:
            raise HTTPException(status_code=400, detail="folders and recipients must not be blank")
        if coordinator.busy:
            raise HTTPException(status_code=409, detail="an upload batch is already in progress")

        async def run(operation, token, report):
            result = await coordinator.upload_folders(
                folders,
                recipients,
                snapshot=body.snapshot,
                progress=lambda p: report(p.to_dict()),
                cancel=token,
            )
            if not result.ok:
                operation.result = result.to_public_dict()
                raise UploadFailedError(result.offending_names, result.offending_digests)
            return result.to_public_dict()

        description = f"upload {len(folders)} folder(s) to {len(recipients)} recipient(s)"
        try:
            operation = await runner.start(OperationKind.UPLOAD, description, run)
        except BusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _out(operation)

    @router.post("/redownload", response_model=OperationOut)
    async def start_redownload(body: RedownloadIn) -> OperationOut:
        digest = body.digest.strip()
        if not digest:
            raise HTTPException(status_code=400, detail="digest must not be blank")
        if redownloader.busy:
            raise HTTPException(status_code=409, detail="a redownload is already in progress")

        async def run(operation, token, report):
            outcome = await redownloader.redownload(
                digest,
                name=body.name,
                author=body.author,
                version=body.version,
                progress=lambda stage, fraction: report({"stage": stage, "fraction": fraction}),
                cancel=token,
            )
            return outcome.to_dict()

        try:
            operation = await runner.start(OperationKind.REDOWNLOAD, f"redownload {digest}", run)
        except BusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _out(operation)

    return router
