# services/api/routers/sync.py
from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query

from core.errors import DocLibError
from routers.deps import Engine, Jobs, raise_http
from schemas.sync import SyncProgress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/run", response_model=SyncProgress)
async def run_sync(
    engine: Engine,
    since: Optional[datetime] = Query(None, description="Override the stored checkpoint"),
) -> SyncProgress:
    """
    Run one delta sync (pull manifest, apply, push queue).

    Returns the final progress; a sync already in flight is not restarted.
    """
    return await engine.perform_delta_sync(since=since)


@router.post("/push")
async def push_now(engine: Engine) -> Dict[str, Any]:
    """Push queued offline changes without pulling."""
    try:
        result = await engine.push_offline_actions()
    except DocLibError as e:
        raise_http(e)
    return asdict(result)


@router.get("/status")
async def sync_status(engine: Engine, jobs: Jobs) -> Dict[str, Any]:
    last = engine.last_sync_timestamp()
    queue = jobs.status()
    return {
        "is_syncing": engine.is_syncing,
        "progress": engine.current_progress.model_dump(mode="json"),
        "last_sync_timestamp": last.isoformat() if last else None,
        "queue": {
            "pending": queue.pending,
            "processing": queue.processing,
            "failed": queue.failed,
            "has_work": queue.has_work,
            "has_errors": queue.has_errors,
        },
    }


@router.get("/checkpoint")
async def get_checkpoint(engine: Engine) -> Dict[str, Any]:
    last = engine.last_sync_timestamp()
    return {"last_sync_timestamp": last.isoformat() if last else None}


@router.delete("/checkpoint")
async def reset_checkpoint(engine: Engine) -> Dict[str, Any]:
    """Forget the checkpoint so the next sync pulls the full manifest."""
    engine.store.set_sync_value("last_sync_timestamp", None, engine.clock.now_ms())
    logger.info("Sync checkpoint reset; next sync is a full pull")
    return {"status": "ok", "last_sync_timestamp": None}
