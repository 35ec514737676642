"""
Delta sync against the server manifest.

One run of perform_delta_sync():
    1) pull the manifest of server changes since the stored checkpoint
    2) apply each change (one transaction per change) through the conflict
       policy, in version order
    3) refresh the search index for touched documents
    4) advance the checkpoint if every change applied
    5) push the offline job queue

Runs are single-flight: a call that arrives while a sync is running returns
the current progress without starting a second run.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from sqlalchemy.engine import Connection

from adapters.base import RemoteSyncApi
from adapters.sqlite import SqliteAdapter
from core.clock import MonotonicClock, from_ms, to_ms
from core.conflict_resolver import (
    OP_RANK,
    ConflictResolver,
    Decision,
    canonical_json,
    changes_digest,
)
from core.errors import ManifestChecksumError, RemoteUnavailableError
from core.job_queue import OfflineJobQueue
from core.search_index import LocalSearchIndex
from models.converters import row_from_remote, row_to_wire
from models.job import Job, JobStatus, JobType
from schemas.sync import (
    ConflictKind,
    SyncChange,
    SyncConflict,
    SyncManifest,
    SyncOperation,
    SyncProgress,
    SyncStatus,
)

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_timestamp"

# Entity types removed together with their document
_DOCUMENT_CHILDREN = ("page", "document_tag", "bookmark", "comment", "reading_progress")

ProgressListener = Callable[[SyncProgress], None]


def manifest_checksum(changes: List[SyncChange]) -> str:
    """
    Digest of parsed changes, for manifests built in-process.

    Manifests fetched over HTTP are checked against `received_digest`, which
    the client takes over the raw JSON before pydantic normalizes it.
    """
    return changes_digest([c.model_dump(mode="json", exclude_unset=True) for c in changes])


@dataclass
class ApplyResult:
    applied: int = 0
    skipped: int = 0
    kept_local: int = 0
    failed: int = 0
    touched_documents: Set[str] = field(default_factory=set)

    @property
    def processed(self) -> int:
        return self.applied + self.skipped + self.kept_local + self.failed


@dataclass
class PushResult:
    pushed: int = 0
    accepted: int = 0
    conflicts: int = 0
    parked: int = 0
    returned: int = 0


class ManifestSyncEngine:
    def __init__(
        self,
        store: SqliteAdapter,
        api: RemoteSyncApi,
        job_queue: OfflineJobQueue,
        search_index: Optional[LocalSearchIndex] = None,
        resolver: Any = ConflictResolver,
        clock: Optional[MonotonicClock] = None,
        page_cache: Any = None,
        verify_checksum: bool = True,
        push_max_attempts: int = 3,
    ):
        self.store = store
        self.api = api
        self.job_queue = job_queue
        self.search_index = search_index
        self.resolver = resolver
        self.clock = clock or job_queue.clock
        self.page_cache = page_cache
        self.verify_checksum = verify_checksum
        self.push_max_attempts = push_max_attempts
        self._lock = asyncio.Lock()
        self._progress = SyncProgress()
        self._listeners: List[ProgressListener] = []

    # ---------- progress ----------

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def current_progress(self) -> SyncProgress:
        return self._progress

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, reset: bool = False, **changes: Any) -> None:
        base = SyncProgress() if reset else self._progress
        self._progress = base.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self._progress)
            except Exception:
                logger.exception("Sync progress listener failed")

    # ---------- checkpoint ----------

    def last_sync_timestamp(self) -> Optional[datetime]:
        raw = self.store.get_sync_value(LAST_SYNC_KEY)
        if not raw:
            return None
        return from_ms(int(raw))

    def _save_checkpoint(self, timestamp: datetime) -> None:
        self.store.set_sync_value(LAST_SYNC_KEY, str(to_ms(timestamp)), self.clock.now_ms())

    # ---------- delta sync ----------

    async def perform_delta_sync(self, since: Optional[datetime] = None) -> SyncProgress:
        if self._lock.locked():
            logger.info("Sync already in progress; skipping")
            return self._progress

        async with self._lock:
            try:
                if not await self.api.is_online():
                    logger.info("Offline; sync skipped")
                    self._emit(reset=True, status=SyncStatus.OFFLINE, message="No network connection")
                    return self._progress

                checkpoint = since or self.last_sync_timestamp()
                self._emit(reset=True, status=SyncStatus.SYNCING, message="Fetching changes from server")
                manifest = await self.api.get_manifest(checkpoint)
                self.verify_manifest(manifest)

                self._emit(
                    total_changes=len(manifest.changes),
                    message=f"Applying {len(manifest.changes)} changes",
                )
                result = self.apply_manifest(manifest)

                if result.failed:
                    logger.warning(
                        f"{result.failed} of {len(manifest.changes)} changes failed; checkpoint kept"
                    )
                else:
                    self._save_checkpoint(manifest.timestamp)

                self._emit(message="Pushing offline changes")
                await self.push_offline_actions()

                if result.failed:
                    self._emit(
                        status=SyncStatus.ERROR,
                        message="Sync finished with errors",
                        error=f"{result.failed} changes failed to apply",
                    )
                else:
                    self._emit(status=SyncStatus.COMPLETED, message="Sync completed")
            except RemoteUnavailableError as e:
                logger.warning(f"Sync interrupted, server unreachable: {e}")
                self._emit(status=SyncStatus.OFFLINE, message="Server unreachable", error=str(e))
            except Exception as e:
                logger.exception("Delta sync failed")
                self._emit(status=SyncStatus.ERROR, message="Sync failed", error=str(e))
        return self._progress

    async def force_sync_now(self) -> SyncProgress:
        return await self.perform_delta_sync()

    def verify_manifest(self, manifest: SyncManifest) -> None:
        if not manifest.checksum or not self.verify_checksum:
            return
        actual = manifest.received_digest or manifest_checksum(manifest.changes)
        if actual != manifest.checksum:
            raise ManifestChecksumError(manifest.checksum, actual)

    def apply_manifest(self, manifest: SyncManifest) -> ApplyResult:
        """Apply changes in version order; a failing change does not stop the others."""
        result = ApplyResult()
        for change in sorted(manifest.changes, key=self.resolver.apply_order):
            try:
                with self.store.begin() as conn:
                    decision, touched = self.apply_remote_change(change, conn)
            except Exception:
                logger.exception(
                    f"Failed to apply {change.operation.value} {change.entity_type} {change.entity_id}"
                )
                result.failed += 1
            else:
                if decision == Decision.APPLY:
                    result.applied += 1
                    result.touched_documents.update(touched)
                elif decision == Decision.KEEP_LOCAL:
                    result.kept_local += 1
                else:
                    result.skipped += 1
            self._emit(processed_changes=result.processed, failed_changes=result.failed)

        if result.touched_documents:
            self._after_documents_changed(result.touched_documents)
        logger.info(
            f"Manifest applied: {result.applied} applied, {result.skipped} stale, "
            f"{result.kept_local} kept local, {result.failed} failed"
        )
        return result

    def apply_remote_change(self, change: SyncChange, conn: Connection) -> Tuple[Decision, Set[str]]:
        et, eid = change.entity_type, change.entity_id
        stored = self.store.get_entity_version(et, eid, conn=conn)
        aliases = self._local_aliases(change, conn)
        pending: List[Job] = []
        for entity_id in [eid] + aliases:
            pending.extend(self.job_queue.get_jobs_for_entity(et, entity_id, conn=conn))

        resolution = self.resolver.resolve_remote(change, stored, pending)
        if resolution.decision == Decision.SKIP_STALE:
            return resolution.decision, set()

        self.store.set_entity_version(et, eid, resolution.version, conn=conn)
        if resolution.decision == Decision.KEEP_LOCAL:
            logger.info(f"Kept newer local {et} {eid} over server change")
            return resolution.decision, set()

        if change.operation != SyncOperation.DELETE and (
            self._shadowed(et, aliases, resolution.version, conn)
            or self._parent_deleted(change, resolution.version, conn)
        ):
            logger.info(f"Skipped {et} {eid}: a newer server change already replaced it")
            return Decision.SKIP_STALE, set()

        remote_ms = resolution.version[0]
        for entity_id in [eid] + aliases:
            self.job_queue.drop_superseded_jobs(et, entity_id, remote_ms, conn=conn)

        existing = self.store.get_entity(et, eid, conn=conn)
        touched = self._documents_for(et, eid, existing or change.data or {}, conn)
        if change.operation == SyncOperation.DELETE:
            self.store.delete_entity(et, eid, conn=conn, version=resolution.version)
        else:
            row = row_from_remote(et, eid, change.data, remote_ms, existing=existing)
            self.store.upsert_entity(et, row, conn=conn)
            touched |= self._documents_for(et, eid, row, conn)

        for body in resolution.reappend:
            self._reappend_comment(body, conn)
        return resolution.decision, touched

    def _local_aliases(self, change: SyncChange, conn: Connection) -> List[str]:
        """Local ids holding the same natural key as the remote entity."""
        local = self.store.find_by_natural_key(change.entity_type, change.data or {}, conn=conn)
        if local and local["id"] != change.entity_id:
            return [local["id"]]
        return []

    def _shadowed(self, entity_type: str, aliases: List[str], version: tuple, conn: Connection) -> bool:
        """A row holding the same natural key came from a newer server change."""
        for alias in aliases:
            alias_version = self.store.get_entity_version(entity_type, alias, conn=conn)
            if alias_version is not None and tuple(alias_version) > tuple(version):
                return True
        return False

    def _parent_deleted(self, change: SyncChange, version: tuple, conn: Connection) -> bool:
        """The owning document (or tag) was deleted by a newer server change."""
        existing = self.store.get_entity(change.entity_type, change.entity_id, conn=conn) or {}
        row = {**existing, **(change.data or {})}
        parents = []
        if change.entity_type in _DOCUMENT_CHILDREN and row.get("doc_id"):
            parents.append(("document", row["doc_id"]))
        if change.entity_type == "document_tag" and row.get("tag_id"):
            parents.append(("tag", row["tag_id"]))
        if change.entity_type == "share" and row.get("subject_type") == "document" and row.get("subject_id"):
            parents.append(("document", row["subject_id"]))
        for parent_type, parent_id in parents:
            tombstone = self.store.get_entity_version(parent_type, parent_id, conn=conn)
            if (
                tombstone is not None
                and tombstone[1] == OP_RANK[SyncOperation.DELETE.value]
                and tuple(tombstone) > tuple(version)
            ):
                return True
        return False

    def _documents_for(self, entity_type: str, entity_id: str, row: Dict[str, Any], conn: Connection) -> Set[str]:
        if entity_type == "document":
            return {entity_id}
        if entity_type in ("page", "document_tag") and row.get("doc_id"):
            return {row["doc_id"]}
        if entity_type == "tag":
            return set(self.store.documents_for_tag(entity_id, conn=conn))
        return set()

    def _reappend_comment(self, body: Dict[str, Any], conn: Connection) -> str:
        """Keep a losing local comment edit as a new comment."""
        now = self.clock.now_ms()
        row = {
            k: body.get(k)
            for k in ("doc_id", "user_id", "page_number", "anchor", "content")
        }
        row.update(id=str(uuid4()), created_at=now, updated_at=now, synced=0)
        if isinstance(row.get("anchor"), (dict, list)):
            row["anchor"] = canonical_json(row["anchor"])
        self.store.upsert_entity("comment", row, conn=conn)
        self.job_queue.add_job(
            JobType.CREATE_COMMENT, row_to_wire("comment", row), entity_id=row["id"], conn=conn
        )
        logger.info(f"Re-appended local comment text as {row['id']}")
        return row["id"]

    def _after_documents_changed(self, doc_ids: Set[str]) -> None:
        if self.search_index is not None:
            self.search_index.refresh(doc_ids)
        if self.page_cache is not None:
            for doc_id in doc_ids:
                if self.store.get_entity("document", doc_id) is None:
                    self.page_cache.clear_document(doc_id)

    # ---------- push ----------

    def _job_to_change(self, job: Job) -> SyncChange:
        return SyncChange(
            change_id=job.id,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            operation=SyncOperation(job.operation),
            data=job.payload or None,
            timestamp=from_ms(job.created_at),
        )

    async def push_offline_actions(self) -> PushResult:
        result = PushResult()
        jobs = self.job_queue.get_pending_jobs()
        if not jobs:
            return result

        self.job_queue.mark_processing(j.id for j in jobs)
        changes = [self._job_to_change(j) for j in jobs]
        result.pushed = len(changes)
        try:
            response = await self.api.push_changes(changes)
        except Exception as e:
            for job in jobs:
                attempts = self.job_queue.increment_job_attempts(job.id, error=str(e))
                status = JobStatus.FAILED if attempts >= self.push_max_attempts else JobStatus.PENDING
                self.job_queue.update_job_status(job.id, status)
            logger.error(f"Push of {len(jobs)} jobs failed: {e}")
            raise

        accepted = set(response.accepted_changes)
        handled: Set[str] = set()
        touched: Set[str] = set()
        for job in jobs:
            if job.id not in accepted:
                continue
            with self.store.begin() as conn:
                self.job_queue.complete_job(job.id, conn=conn)
                self._mark_synced_if_settled(job.entity_type, job.entity_id, conn)
            handled.add(job.id)
            result.accepted += 1

        for conflict in response.conflicts:
            matching = [
                j
                for j in jobs
                if j.entity_type == conflict.entity_type
                and j.entity_id == conflict.entity_id
                and j.id not in handled
            ]
            if not matching:
                logger.warning(f"Conflict for unknown change {conflict.entity_type} {conflict.entity_id}")
                continue
            result.conflicts += 1
            if self._handle_conflict(conflict, matching, touched):
                result.parked += len(matching)
            handled.update(j.id for j in matching)

        leftovers = [j.id for j in jobs if j.id not in handled]
        if leftovers:
            result.returned = self.job_queue.return_to_pending(leftovers)
        if touched:
            self._after_documents_changed(touched)
        logger.info(
            f"Push finished: {result.accepted}/{result.pushed} accepted, "
            f"{result.conflicts} conflicts, {result.returned} returned to queue"
        )
        return result

    def _mark_synced_if_settled(self, entity_type: str, entity_id: str, conn: Connection) -> None:
        if not self.job_queue.has_outstanding_jobs(entity_type, entity_id, conn=conn):
            self.store.mark_synced(entity_type, entity_id, conn=conn)

    def _handle_conflict(self, conflict: SyncConflict, jobs: List[Job], touched: Set[str]) -> bool:
        """Returns True when the jobs were parked for manual resolution."""
        et, eid = conflict.entity_type, conflict.entity_id
        try:
            kind = ConflictKind(conflict.resolution)
        except ValueError:
            for job in jobs:
                self.job_queue.fail_job(job.id, f"conflict: unresolved ({conflict.resolution})")
            return True

        with self.store.begin() as conn:
            for job in jobs:
                self.job_queue.complete_job(job.id, conn=conn)

            if kind == ConflictKind.CLIENT_WINS:
                self._mark_synced_if_settled(et, eid, conn)
            else:
                if kind == ConflictKind.MERGE_REQUIRED:
                    merged = self.resolver.merge(et, conflict.client_version, conflict.server_version)
                    record, reappend = merged.record, merged.reappend
                else:
                    record, reappend = conflict.server_version, None
                touched |= self._apply_server_version(et, eid, record, conn)
                if reappend:
                    self._reappend_comment(reappend, conn)
        logger.info(f"Resolved push conflict on {et} {eid} as {kind.value}")
        return False

    def _apply_server_version(
        self, entity_type: str, entity_id: str, record: Dict[str, Any], conn: Connection
    ) -> Set[str]:
        existing = self.store.get_entity(entity_type, entity_id, conn=conn)
        touched = self._documents_for(entity_type, entity_id, existing or record or {}, conn)
        if not record:
            # server no longer has the entity
            self.store.delete_entity(entity_type, entity_id, conn=conn)
            return touched
        row = row_from_remote(entity_type, entity_id, record, self.clock.now_ms(), existing=existing)
        self.store.upsert_entity(entity_type, row, conn=conn)
        return touched | self._documents_for(entity_type, entity_id, row, conn)
