from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from src.modshare.errors import BusyError, ModShareError, RestoreEntryFailed
from src.modshare.operations.api import OperationOut
from src.modshare.operations.models import OperationKind
from src.modshare.operations.runner import OperationRunner

from .manager import BackupManager
from .models import PackageEntry


class PackageEntryIn(BaseModel):
    digest: str = Field(min_length=1)
    install_folder_name: str = ""
    display_name: str = ""
    author: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None
    folder_digest: Optional[str] = None


class BackupCreateIn(BaseModel):
    name: Optional[str] = None
    entries: list[PackageEntryIn] = Field(min_length=1)


class BackupFromInstalledIn(BaseModel):
    name: Optional[str] = None
    folders: list[str] = Field(min_length=1)
    snapshot: bool = False


class BackupSummaryOut(BaseModel):
    id: str
    name: str
    entry_count: int
    is_complete: bool
    created_at: str


class BackupOut(BackupSummaryOut):
    entries: list[PackageEntryIn]


def create_backup_router(*, manager: BackupManager, runner: OperationRunner) -> APIRouter:
    router = APIRouter(prefix="/api/backups", tags=["backups"])

    @router.get("", response_model=list[BackupSummaryOut])
    async def list_backups() -> list[BackupSummaryOut]:
        try:
            summaries = await manager.list_backups()
        except ModShareError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return [BackupSummaryOut(**s.to_public_dict()) for s in summaries]

    @router.get("/{backup_id}", response_model=BackupOut)
    async def get_backup(backup_id: str) -> BackupOut:
        try:
            backup = await manager.get(backup_id)
        except ModShareError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if backup is None:
            raise HTTPException(status_code=404, detail="backup not found")
        return BackupOut(**backup.to_public_dict())

    @router.post("", response_model=BackupSummaryOut)
    async def create_backup(body: BackupCreateIn) -> BackupSummaryOut:
        try:
            entries = [PackageEntry.from_dict(e.model_dump()) for e in body.entries]
            summary = await manager.create(body.name, entries)
        except BusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ModShareError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return BackupSummaryOut(**summary.to_public_dict())

    @router.post("/from-installed", response_model=OperationOut)
    async def create_from_installed(body: BackupFromInstalledIn) -> OperationOut:
        folders = [f.strip() for f in body.folders if f and f.strip()]
        if not folders:
            raise HTTPException(status_code=400, detail="folders must not be blank")
        if manager.busy:
            raise HTTPException(status_code=409, detail="a backup operation is already in progress")

        async def run(operation, token, report):
            summary = await manager.create_from_installed(
                folders,
                name=body.name,
                snapshot=body.snapshot,
                progress=lambda p: report(p.to_dict()),
                cancel=token,
            )
            return summary.to_public_dict()

        try:
            operation = await runner.start(OperationKind.BACKUP, f"back up {len(folders)} folder(s)", run)
        except BusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return OperationOut(**operation.to_public_dict())

    @router.delete("/{backup_id}")
    async def delete_backup(backup_id: str) -> dict:
        try:
            await manager.delete(backup_id)
        except BusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ModShareError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"ok": True, "id": backup_id}

    @router.post("/{backup_id}/restore", response_model=OperationOut)
    async def restore_backup(backup_id: str) -> OperationOut:
        if manager.busy:
            raise HTTPException(status_code=409, detail="a backup operation is already in progress")
        try:
            backup = await manager.get(backup_id)
        except ModShareError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if backup is None:
            raise HTTPException(status_code=404, detail="backup not found")

        async def run(operation, token, report):
            result = await manager.restore(
                backup_id,
                progress=lambda p: report(p.to_dict()),
                cancel=token,
            )
            if not result.succeeded:
                operation.result = result.to_public_dict()
                raise RestoreEntryFailed(
                    index=result.failed_index,
                    name=result.failed_name or "",
                    digest=result.failed_digest or "",
                    reason=result.error or "unknown error",
                    stage=result.failure_stage or "install",
                )
            return result.to_public_dict()

        try:
            operation = await runner.start(OperationKind.BACKUP, f"restore {backup.summary.name}", run)
        except BusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return OperationOut(**operation.to_public_dict())

    return router
