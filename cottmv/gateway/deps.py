from __future__ import annotations

import secrets
from typing import Annotated, AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlmodel.ext.asyncio.session import AsyncSession

from cottmv.gateway.config import Settings, get_settings
from cottmv.gateway.db import create_session
from cottmv.gateway.ocr import OCRExtractor
from cottmv.gateway.registry import MediaRegistry
from cottmv.gateway.transcode.coordinator import TranscodeCoordinator
from cottmv.gateway.transcode.eviction import CacheEvictor
from cottmv.gateway.transcode.index import CacheIndex
from cottmv.gateway.transcode.runner import TranscodeRunner

SettingsDep = Annotated[Settings, Depends(get_settings)]


async def get_db_session(settings: Settings = Depends(get_settings)) -> AsyncIterator[AsyncSession]:
    async for session in create_session(settings):
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_registry(db: DbSession, settings: SettingsDep) -> MediaRegistry:
    return MediaRegistry(db, settings.media_dir)


RegistryDep = Annotated[MediaRegistry, Depends(get_registry)]


# Long-lived components are built in the lifespan and parked on app.state.


def get_coordinator(request: Request) -> TranscodeCoordinator:
    return request.app.state.coordinator


def get_runner(request: Request) -> TranscodeRunner:
    return request.app.state.runner


def get_cache_index(request: Request) -> CacheIndex:
    return request.app.state.cache_index


def get_evictor(request: Request) -> CacheEvictor:
    return request.app.state.evictor


def get_ocr_extractor(request: Request) -> OCRExtractor:
    return request.app.state.ocr


CoordinatorDep = Annotated[TranscodeCoordinator, Depends(get_coordinator)]
RunnerDep = Annotated[TranscodeRunner, Depends(get_runner)]
CacheIndexDep = Annotated[CacheIndex, Depends(get_cache_index)]
EvictorDep = Annotated[CacheEvictor, Depends(get_evictor)]
OCRDep = Annotated[OCRExtractor, Depends(get_ocr_extractor)]


async def require_admin(
    settings: SettingsDep,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    """Require the static admin token when one is configured."""
    if settings.admin_token is None:
        return
    if x_admin_token is None or not secrets.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
