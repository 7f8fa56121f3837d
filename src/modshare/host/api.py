from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from .capability import ModHost


class InstalledModOut(BaseModel):
    folder_name: str
    display_name: str
    author: Optional[str] = None
    version: Optional[str] = None


def _installed(host: ModHost) -> list[InstalledModOut]:
    mods: list[InstalledModOut] = []
    for folder, display in host.list_mods().items():
        try:
            meta = host.get_metadata(folder)
        except (OSError, ValueError):
            meta = None
        mods.append(InstalledModOut(
            folder_name=folder,
            display_name=display,
            author=meta.author if meta else None,
            version=meta.version if meta else None,
        ))
    return mods


def create_mods_router(*, host: ModHost) -> APIRouter:
    router = APIRouter(prefix="/api/mods", tags=["mods"])

    @router.get("", response_model=list[InstalledModOut])
    async def list_installed() -> list[InstalledModOut]:
        return await asyncio.to_thread(_installed, host)

    return router
