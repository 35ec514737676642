# services/api/routers/cache.py
from __future__ import annotations

import asyncio
from typing import Any, Dict

from fastapi import APIRouter

from core.errors import CacheError
from routers.deps import Cache, raise_http
from schemas.cache import CacheConfigUpdate, CacheOptimizeRequest, CacheStats

router = APIRouter(
    prefix="/cache",
    tags=["cache"],
)


@router.get("/stats", response_model=CacheStats)
async def cache_stats(cache: Cache) -> CacheStats:
    return CacheStats(**cache.statistics())


@router.delete("")
async def clear_cache(cache: Cache) -> Dict[str, Any]:
    try:
        await asyncio.to_thread(cache.clear)
    except CacheError as e:
        raise_http(e)
    return {"status": "ok"}


@router.delete("/documents/{doc_id}")
async def clear_document_cache(doc_id: str, cache: Cache) -> Dict[str, Any]:
    removed = cache.clear_document(doc_id)
    return {"status": "ok", "doc_id": doc_id, "removed": removed}


@router.post("/optimize")
async def optimize_cache(body: CacheOptimizeRequest, cache: Cache) -> Dict[str, Any]:
    """Evict least recently used entries down to `target_mb` (default 80% of the ceiling)."""
    evicted = await asyncio.to_thread(cache.optimize, body.target_mb)
    return {"status": "ok", "evicted": evicted, "stats": cache.statistics()}


@router.put("/config", response_model=CacheStats)
async def configure_cache(body: CacheConfigUpdate, cache: Cache) -> CacheStats:
    cache.configure(max_size_mb=body.max_size_mb, expiry_days=body.expiry_days)
    return CacheStats(**cache.statistics())


@router.post("/maintenance")
async def run_maintenance(cache: Cache) -> Dict[str, Any]:
    return await asyncio.to_thread(cache.perform_maintenance)
