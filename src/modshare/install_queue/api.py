from __future__ import annotations

import asyncio
from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from src.modshare.errors import BusyError, ModShareError
from src.modshare.events import EventBus, EventType
from src.modshare.fs.hashing import normalize_digest
from src.modshare.transfer.channel import TransferChannel

from .models import TransferNotification
from .queue import InstallQueue


class SelectIn(BaseModel):
    digest: str = Field(min_length=1)
    selected: bool = True


class DigestIn(BaseModel):
    digest: str = Field(min_length=1)


class DiscardIn(BaseModel):
    digests: list[str] = Field(min_length=1)


class QueueItemOut(BaseModel):
    digest: str
    sender_id: str
    sender_display_hint: str
    install_folder_name: Optional[str] = None
    package_info: Optional[dict[str, Any]] = None
    state: str
    selected: bool
    error: Optional[str] = None
    progress: Optional[float] = None
    installed: Optional[bool] = None
    installed_version: Optional[str] = None
    update_available: bool = False


class QueueSnapshotOut(BaseModel):
    active: bool
    current: Optional[str] = None
    queued: list[str]
    batch_total: int
    batch_done: int
    pending: list[QueueItemOut]


class CountOut(BaseModel):
    count: int


def _snapshot(queue: InstallQueue) -> QueueSnapshotOut:
    snap = queue.snapshot()
    return QueueSnapshotOut(
        active=snap["active"],
        current=snap["current"],
        queued=snap["queued"],
        batch_total=snap["batch_total"],
        batch_done=snap["batch_done"],
        pending=[QueueItemOut(**item) for item in snap["pending"]],
    )


def create_install_queue_router(*, queue: InstallQueue, channel: TransferChannel, bus: EventBus) -> APIRouter:
    router = APIRouter(prefix="/api/incoming", tags=["incoming"])

    @router.get("", response_model=QueueSnapshotOut)
    async def get_queue() -> QueueSnapshotOut:
        return _snapshot(queue)

    @router.post("/poll", response_model=CountOut)
    async def poll_incoming() -> CountOut:
        try:
            offers = await asyncio.to_thread(channel.list_incoming)
        except ModShareError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        added = 0
        for offer in offers:
            if not offer.digest:
                continue
            if await queue.on_arrival(TransferNotification.from_offer(offer)):
                added += 1
        return CountOut(count=added)

    @router.post("/select", response_model=QueueSnapshotOut)
    async def select(body: SelectIn) -> QueueSnapshotOut:
        if not await queue.set_selected(normalize_digest(body.digest), body.selected):
            raise HTTPException(status_code=409, detail="notification is not selectable")
        return _snapshot(queue)

    @router.post("/toggle", response_model=QueueSnapshotOut)
    async def toggle(body: DigestIn) -> QueueSnapshotOut:
        if not await queue.toggle_selected(normalize_digest(body.digest)):
            raise HTTPException(status_code=409, detail="notification is not selectable")
        return _snapshot(queue)

    @router.post("/select-all", response_model=CountOut)
    async def select_all() -> CountOut:
        return CountOut(count=await queue.select_all())

    @router.post("/select-installed", response_model=CountOut)
    async def select_installed() -> CountOut:
        return CountOut(count=await queue.select_installed())

    @router.post("/select-new", response_model=CountOut)
    async def select_new() -> CountOut:
        return CountOut(count=await queue.select_new())

    @router.post("/clear-selection", response_model=QueueSnapshotOut)
    async def clear_selection() -> QueueSnapshotOut:
        await queue.clear_selection()
        return _snapshot(queue)

    @router.post("/start", response_model=CountOut)
    async def start_batch() -> CountOut:
        try:
            count = await queue.start_batch()
        except BusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if count == 0:
            raise HTTPException(status_code=400, detail="nothing selected")
        return CountOut(count=count)

    @router.post("/cancel")
    async def cancel_batch() -> dict:
        return {"cancelled": queue.cancel_batch("cancelled by user")}

    @router.post("/discard", response_model=CountOut)
    async def discard(body: DiscardIn) -> CountOut:
        removed = await queue.discard(normalize_digest(d) for d in body.digests if d.strip())
        return CountOut(count=len(removed))

    @router.post("/discard-selected", response_model=CountOut)
    async def discard_selected() -> CountOut:
        return CountOut(count=len(await queue.discard_selected()))

    @router.post("/discard-all", response_model=CountOut)
    async def discard_all() -> CountOut:
        return CountOut(count=len(await queue.discard_all()))

    @router.post("/refresh", response_model=QueueSnapshotOut)
    async def refresh() -> QueueSnapshotOut:
        await queue.refresh_status()
        return _snapshot(queue)

    @router.get("/events")
    async def recent_events(event_type: Optional[EventType] = None, limit: int = 100) -> list[dict[str, Any]]:
        limit = max(1, min(limit, 500))
        return [e.to_dict() for e in bus.recent(event_type, limit)]

    return router
