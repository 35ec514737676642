# services/api/routers/jobs.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query

from core.conflict_resolver import describe, suggest_resolution
from core.errors import JobNotFoundError
from core.validation import coerce_conflict_resolution
from models.job import Job, JobStatus
from routers.deps import Jobs, Mutations, raise_http
from schemas.sync import ConflictResolveRequest

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _job_out(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type.value,
        "entity_type": job.entity_type,
        "entity_id": job.entity_id,
        "status": job.status.value,
        "attempts": job.attempts,
        "last_error": job.last_error,
        "created_at": job.created_at,
        "scheduled_at": job.scheduled_at,
        "payload": job.payload,
    }


@router.get("")
async def list_jobs(
    jobs: Jobs,
    status: Optional[JobStatus] = Query(None, description="pending | processing | completed | failed"),
) -> List[Dict[str, Any]]:
    return [_job_out(j) for j in jobs.get_jobs(status)]


@router.get("/status")
async def queue_status(jobs: Jobs) -> Dict[str, Any]:
    s = jobs.status()
    return {
        "pending": s.pending,
        "processing": s.processing,
        "failed": s.failed,
        "total": s.total,
        "has_work": s.has_work,
        "has_errors": s.has_errors,
        "last_updated": s.last_updated,
    }


@router.post("/retry-failed")
async def retry_failed(jobs: Jobs) -> Dict[str, int]:
    return {"retried": jobs.retry_failed_jobs()}


@router.post("/process-retryable")
async def process_retryable(jobs: Jobs) -> Dict[str, int]:
    return {"rescheduled": jobs.process_retryable_jobs()}


@router.delete("/completed")
async def clear_completed(jobs: Jobs) -> Dict[str, int]:
    return {"removed": jobs.clear_old_jobs()}


@router.get("/conflicts")
async def list_conflicts(jobs: Jobs, mutations: Mutations) -> List[Dict[str, Any]]:
    """Jobs parked with a conflict, with the suggested resolution."""
    out = []
    for job in jobs.get_conflicted_jobs():
        current = mutations.store.get_entity(job.entity_type, job.entity_id) or {}
        item = _job_out(job)
        item["description"] = describe(job.entity_type)
        item["suggested_resolution"] = suggest_resolution(job.entity_type, job.payload, current).value
        out.append(item)
    return out


@router.post("/{job_id}/resolve")
async def resolve_conflict(job_id: str, body: ConflictResolveRequest, jobs: Jobs) -> Dict[str, str]:
    resolution = coerce_conflict_resolution(body.resolution)
    try:
        jobs.resolve_conflict(job_id, resolution)
    except JobNotFoundError as e:
        raise_http(e)
    return {"status": "ok", "job_id": job_id, "resolution": resolution.value}
