"""
Durable offline job queue.

Every local mutation writes its entity row and a job row in the same
transaction, so a mutation can never exist locally without a queued job.
Jobs stay in the table until the server acknowledges them (complete_job
deletes the row) or a user resolves a conflict.
"""
from __future__ import annotations

import logging
import random
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.engine import Connection

from adapters.sqlite import SqliteAdapter, jobs_queue
from core.clock import MonotonicClock
from core.errors import JobNotFoundError
from models.job import ConflictResolution, Job, JobQueueStatus, JobStatus, JobType

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

# Jobs the server has not acknowledged yet
_UNACKED = (JobStatus.PENDING.value, JobStatus.PROCESSING.value, JobStatus.FAILED.value)

StatusListener = Callable[[JobQueueStatus], None]


class OfflineJobQueue:
    def __init__(
        self,
        store: SqliteAdapter,
        clock: Optional[MonotonicClock] = None,
        max_attempts: int = 5,
        backoff_base_seconds: int = 30,
        backoff_jitter_seconds: int = 10,
        retention_days: int = 7,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.clock = clock or MonotonicClock()
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_seconds * 1000
        self.backoff_jitter_ms = backoff_jitter_seconds * 1000
        self.retention_ms = retention_days * DAY_MS
        self._rng = rng or random.Random()
        self._listeners: List[StatusListener] = []

    # ---------- enqueue ----------

    def add_job(
        self,
        job_type: JobType,
        payload: Dict[str, Any],
        entity_id: Optional[str] = None,
        scheduled_at: Optional[int] = None,
        conn: Optional[Connection] = None,
    ) -> Job:
        """
        Queue a mutation. Pass `conn` to enqueue inside the transaction that
        writes the entity row.
        """
        job_type = JobType(job_type)
        entity_id = entity_id or payload.get("id")
        if not entity_id:
            raise ValueError(f"{job_type.value} job needs an entity id")

        now = self.clock.now_ms()
        job = Job(
            id=str(uuid4()),
            type=job_type,
            entity_type=job_type.entity_type,
            entity_id=str(entity_id),
            payload=payload,
            status=JobStatus.PENDING,
            created_at=now,
            attempts=0,
            scheduled_at=scheduled_at if scheduled_at is not None else now,
        )
        with self.store.begin(conn) as c:
            c.execute(jobs_queue.insert().values(**job.to_row()))
            self._notify(c)
        logger.info(f"Queued job {job.id} ({job.type.value} {job.entity_id})")
        return job

    # ---------- queries ----------

    def _select(self, conn: Optional[Connection], *conds, order_by=None) -> List[Job]:
        q = select(jobs_queue)
        if conds:
            q = q.where(and_(*conds))
        q = q.order_by(order_by if order_by is not None else jobs_queue.c.created_at.asc())
        with self.store.begin(conn) as c:
            return [Job.from_row(dict(r)) for r in c.execute(q).mappings().all()]

    def get_job(self, job_id: str, conn: Optional[Connection] = None) -> Job:
        jobs = self._select(conn, jobs_queue.c.id == job_id)
        if not jobs:
            raise JobNotFoundError(f"Job {job_id} not found")
        return jobs[0]

    def get_pending_jobs(self, limit: Optional[int] = None) -> List[Job]:
        """Pending jobs that are due, oldest first."""
        jobs = self._select(
            None,
            jobs_queue.c.status == JobStatus.PENDING.value,
            jobs_queue.c.scheduled_at <= self.clock.now_ms(),
        )
        return jobs[:limit] if limit else jobs

    def get_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        if status is None:
            return self._select(None)
        return self._select(None, jobs_queue.c.status == JobStatus(status).value)

    def get_jobs_by_type(self, job_type: JobType) -> List[Job]:
        return self._select(None, jobs_queue.c.type == JobType(job_type).value)

    def get_jobs_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        conn: Optional[Connection] = None,
        statuses: Iterable[str] = _UNACKED,
    ) -> List[Job]:
        return self._select(
            conn,
            jobs_queue.c.entity_type == entity_type,
            jobs_queue.c.entity_id == entity_id,
            jobs_queue.c.status.in_(list(statuses)),
        )

    def has_outstanding_jobs(
        self,
        entity_type: str,
        entity_id: str,
        exclude_ids: Iterable[str] = (),
        conn: Optional[Connection] = None,
    ) -> bool:
        exclude = set(exclude_ids)
        jobs = self.get_jobs_for_entity(entity_type, entity_id, conn=conn)
        return any(j.id not in exclude for j in jobs)

    def get_job_count(self, status: Optional[JobStatus] = None) -> int:
        q = select(func.count()).select_from(jobs_queue)
        if status is not None:
            q = q.where(jobs_queue.c.status == JobStatus(status).value)
        with self.store.begin() as c:
            return int(c.execute(q).scalar() or 0)

    def has_due_jobs(self) -> bool:
        """Pending jobs whose backoff has elapsed."""
        q = (
            select(jobs_queue.c.id)
            .where(
                jobs_queue.c.status == JobStatus.PENDING.value,
                jobs_queue.c.scheduled_at <= self.clock.now_ms(),
            )
            .limit(1)
        )
        with self.store.begin() as c:
            return c.execute(q).first() is not None

    def get_conflicted_jobs(self) -> List[Job]:
        return self._select(
            None,
            jobs_queue.c.status == JobStatus.FAILED.value,
            func.lower(jobs_queue.c.last_error).like("%conflict%"),
        )

    def status(self, conn: Optional[Connection] = None) -> JobQueueStatus:
        q = select(jobs_queue.c.status, func.count()).group_by(jobs_queue.c.status)
        with self.store.begin(conn) as c:
            counts = {row[0]: row[1] for row in c.execute(q).all()}
        return JobQueueStatus(
            pending=counts.get(JobStatus.PENDING.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
            last_updated=self.clock.now_ms(),
        )

    # ---------- state transitions ----------

    def _update(self, conn: Optional[Connection], job_ids: Iterable[str], **values: Any) -> int:
        ids = list(job_ids)
        if not ids:
            return 0
        with self.store.begin(conn) as c:
            res = c.execute(update(jobs_queue).where(jobs_queue.c.id.in_(ids)).values(**values))
            self._notify(c)
            return res.rowcount or 0

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> None:
        values: Dict[str, Any] = {"status": JobStatus(status).value}
        if error is not None:
            values["last_error"] = error
        if not self._update(conn, [job_id], **values):
            raise JobNotFoundError(f"Job {job_id} not found")

    def mark_processing(self, job_ids: Iterable[str]) -> int:
        return self._update(None, job_ids, status=JobStatus.PROCESSING.value)

    def return_to_pending(self, job_ids: Iterable[str]) -> int:
        return self._update(None, job_ids, status=JobStatus.PENDING.value)

    def increment_job_attempts(
        self, job_id: str, error: Optional[str] = None, conn: Optional[Connection] = None
    ) -> int:
        with self.store.begin(conn) as c:
            values: Dict[str, Any] = {"attempts": jobs_queue.c.attempts + 1}
            if error is not None:
                values["last_error"] = error
            res = c.execute(update(jobs_queue).where(jobs_queue.c.id == job_id).values(**values))
            if not res.rowcount:
                raise JobNotFoundError(f"Job {job_id} not found")
            return int(
                c.execute(select(jobs_queue.c.attempts).where(jobs_queue.c.id == job_id)).scalar()
            )

    def complete_job(self, job_id: str, conn: Optional[Connection] = None) -> None:
        """Server acknowledged the job: drop it from the queue."""
        with self.store.begin(conn) as c:
            c.execute(delete(jobs_queue).where(jobs_queue.c.id == job_id))
            self._notify(c)

    def fail_job(self, job_id: str, error: str, conn: Optional[Connection] = None) -> None:
        self.update_job_status(job_id, JobStatus.FAILED, error=error, conn=conn)
        logger.warning(f"Job {job_id} failed: {error}")

    def drop_superseded_jobs(
        self,
        entity_type: str,
        entity_id: str,
        not_after_ms: int,
        conn: Optional[Connection] = None,
    ) -> List[Job]:
        """
        Remove unacknowledged jobs for an entity stamped at or before
        `not_after_ms` (a newer server version won). Returns the dropped jobs.
        """
        with self.store.begin(conn) as c:
            dropped = [
                j
                for j in self.get_jobs_for_entity(entity_type, entity_id, conn=c)
                if j.created_at <= not_after_ms
            ]
            if dropped:
                c.execute(delete(jobs_queue).where(jobs_queue.c.id.in_([j.id for j in dropped])))
                self._notify(c)
        for j in dropped:
            logger.info(f"Dropped superseded job {j.id} ({j.type.value} {entity_id})")
        return dropped

    def retry_failed_jobs(self) -> int:
        """Manual retry: every failed job goes back to pending with a fresh budget."""
        failed = [j.id for j in self.get_jobs(JobStatus.FAILED)]
        return self._update(
            None,
            failed,
            status=JobStatus.PENDING.value,
            attempts=0,
            last_error=None,
            scheduled_at=self.clock.now_ms(),
        )

    def process_retryable_jobs(self) -> int:
        """
        Re-schedule failed jobs that still have attempts left, with exponential
        backoff plus jitter. Conflicted jobs wait for a manual resolution.
        """
        now = self.clock.now_ms()
        count = 0
        with self.store.begin() as c:
            for job in self._select(c, jobs_queue.c.status == JobStatus.FAILED.value):
                if job.attempts >= self.max_attempts or job.is_conflict:
                    continue
                delay = self.backoff_delay_ms(job.attempts)
                c.execute(
                    update(jobs_queue)
                    .where(jobs_queue.c.id == job.id)
                    .values(status=JobStatus.PENDING.value, scheduled_at=now + delay)
                )
                count += 1
            if count:
                self._notify(c)
        if count:
            logger.info(f"Re-scheduled {count} failed jobs")
        return count

    def backoff_delay_ms(self, attempts: int) -> int:
        jitter = self._rng.randint(0, self.backoff_jitter_ms) if self.backoff_jitter_ms > 0 else 0
        return self.backoff_base_ms * (2 ** attempts) + jitter

    def clear_old_jobs(self, older_than_ms: Optional[int] = None) -> int:
        age = self.retention_ms if older_than_ms is None else older_than_ms
        cutoff = self.clock.now_ms() - age
        with self.store.begin() as c:
            res = c.execute(
                delete(jobs_queue).where(
                    and_(
                        jobs_queue.c.status == JobStatus.COMPLETED.value,
                        jobs_queue.c.created_at < cutoff,
                    )
                )
            )
            self._notify(c)
            return res.rowcount or 0

    def recover_stale(self) -> int:
        """Jobs left `processing` by a crash go back to pending."""
        stale = [j.id for j in self.get_jobs(JobStatus.PROCESSING)]
        if stale:
            logger.warning(f"Recovering {len(stale)} jobs stuck in processing")
        return self._update(None, stale, status=JobStatus.PENDING.value)

    def resolve_conflict(
        self,
        job_id: str,
        resolution: ConflictResolution,
        merged_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        job = self.get_job(job_id)
        resolution = ConflictResolution(resolution)
        if resolution == ConflictResolution.USE_SERVER:
            self.complete_job(job.id)
        else:
            values: Dict[str, Any] = {
                "status": JobStatus.PENDING.value,
                "attempts": 0,
                "last_error": None,
                "scheduled_at": self.clock.now_ms(),
            }
            if resolution == ConflictResolution.MERGE and merged_payload is not None:
                job.payload = merged_payload
                values["payload"] = job.to_row()["payload"]
            self._update(None, [job.id], **values)
        logger.info(f"Resolved conflict on job {job_id} with {resolution.value}")

    # ---------- observers ----------

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, conn: Optional[Connection] = None) -> None:
        if not self._listeners:
            return
        current = self.status(conn)
        for listener in list(self._listeners):
            try:
                listener(current)
            except Exception:
                logger.exception("Job queue status listener failed")
