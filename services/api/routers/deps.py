# services/api/routers/deps.py
"""
DI helpers shared by routers: services live on app.state (built in main.create_app).
"""
from __future__ import annotations

import logging
from typing import Annotated, NoReturn

from fastapi import Depends, HTTPException, Request

from core.errors import (
    CacheError,
    EntityNotFoundError,
    JobNotFoundError,
    ManifestChecksumError,
    PageRenderingError,
    RemoteUnavailableError,
    SyncError,
)
from core.job_queue import OfflineJobQueue
from core.mutations import LocalMutationService
from core.page_cache import PageCacheStore
from core.rendering import PageRenderingService
from core.search_index import LocalSearchIndex
from core.sync_engine import ManifestSyncEngine

logger = logging.getLogger(__name__)


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not configured on app.state")
    return service


def get_sync_engine(request: Request) -> ManifestSyncEngine:
    return _state(request, "sync_engine")


def get_job_queue(request: Request) -> OfflineJobQueue:
    return _state(request, "job_queue")


def get_mutations(request: Request) -> LocalMutationService:
    return _state(request, "mutations")


def get_page_cache(request: Request) -> PageCacheStore:
    return _state(request, "page_cache")


def get_search_index(request: Request) -> LocalSearchIndex:
    return _state(request, "search_index")


def get_renderer(request: Request) -> PageRenderingService:
    return _state(request, "renderer")


# ---- DI aliases (no default value allowed) ----
Engine = Annotated[ManifestSyncEngine, Depends(get_sync_engine)]
Jobs = Annotated[OfflineJobQueue, Depends(get_job_queue)]
Mutations = Annotated[LocalMutationService, Depends(get_mutations)]
Cache = Annotated[PageCacheStore, Depends(get_page_cache)]
Search = Annotated[LocalSearchIndex, Depends(get_search_index)]
Renderer = Annotated[PageRenderingService, Depends(get_renderer)]


def raise_http(exc: Exception) -> NoReturn:
    """Translate a core error into the matching HTTPException."""
    if isinstance(exc, (EntityNotFoundError, JobNotFoundError)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, ManifestChecksumError):
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if isinstance(exc, RemoteUnavailableError):
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if isinstance(exc, SyncError):
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if isinstance(exc, PageRenderingError):
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if isinstance(exc, CacheError):
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    logger.exception("Unexpected error")
    raise HTTPException(status_code=500, detail=str(exc)) from exc
