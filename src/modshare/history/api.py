from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from src.modshare.errors import ModShareError

from .service import TransferHistory


class TransferRecordOut(BaseModel):
    digest: str
    name: str
    counterpart_id: str
    timestamp: str
    author: Optional[str] = None
    version: Optional[str] = None


class ReshareIn(BaseModel):
    recipients: list[str] = Field(min_length=1)


def create_history_router(*, history: TransferHistory) -> APIRouter:
    router = APIRouter(prefix="/api/history", tags=["history"])

    @router.get("/{direction}", response_model=list[TransferRecordOut])
    async def list_history(direction: str) -> list[TransferRecordOut]:
        try:
            records = await history.records(direction)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ModShareError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return [TransferRecordOut(**r.to_dict()) for r in records]

    @router.post("/{digest}/reshare")
    async def reshare(digest: str, body: ReshareIn) -> dict:
        try:
            entry = await history.reshare(digest, body.recipients)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="package not found in history") from exc
        except ModShareError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"ok": True, "package": entry.to_dict()}

    return router
