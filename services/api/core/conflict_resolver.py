"""
Conflict resolution between server changes and queued local mutations.

Pure functions over plain data: nothing here touches the database, so the
sync engine can call it inside its per-change transaction and tests can call
it directly.

Rules:
    - Scalar entities use last-writer-wins on the change timestamp.
      Ties go to the server.
    - Comments are append-only: a local edit that loses to the server is
      re-appended as a new comment instead of being discarded.
    - Remote changes are totally ordered by version_key(), and an entity
      never moves back to an older version. Applying a manifest therefore
      ends in the same state whatever order its changes arrive in.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.clock import to_ms
from models.job import ConflictResolution, Job
from schemas.sync import SyncChange, SyncOperation

# delete > update > create at equal timestamps
OP_RANK = {
    SyncOperation.CREATE.value: 0,
    SyncOperation.UPDATE.value: 1,
    SyncOperation.DELETE.value: 2,
}

APPEND_ONLY_TYPES = frozenset({"comment"})

VersionKey = Tuple[int, int, str]


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def data_digest(data: Optional[Dict[str, Any]]) -> str:
    return hashlib.sha256(canonical_json(data or {}).encode("utf-8")).hexdigest()


def changes_digest(changes: Sequence[Dict[str, Any]]) -> str:
    """sha256 of a manifest change list, taken over the JSON exactly as the server sent it."""
    return hashlib.sha256(canonical_json(list(changes)).encode("utf-8")).hexdigest()


def version_key(change: SyncChange) -> VersionKey:
    return (
        to_ms(change.timestamp),
        OP_RANK[SyncOperation(change.operation).value],
        data_digest(change.data),
    )


def apply_order(change: SyncChange) -> tuple:
    """Sort key for applying a batch of remote changes deterministically."""
    return version_key(change) + (change.entity_type, change.entity_id)


def is_append_only(entity_type: str) -> bool:
    return entity_type in APPEND_ONLY_TYPES


class Decision(str, Enum):
    APPLY = "apply"
    SKIP_STALE = "skip_stale"
    KEEP_LOCAL = "keep_local"


@dataclass
class Resolution:
    decision: Decision
    version: VersionKey
    # Comment bodies to re-append as new comments
    reappend: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def applies(self) -> bool:
        return self.decision == Decision.APPLY


@dataclass
class MergeResult:
    record: Dict[str, Any]
    reappend: Optional[Dict[str, Any]] = None


def resolve_remote(
    change: SyncChange,
    stored_version: Optional[Sequence[Any]],
    pending_jobs: Sequence[Job],
) -> Resolution:
    """
    Decide what to do with one incoming server change.

    Args:
        change: The remote change.
        stored_version: version_key of the last remote change applied to this
            entity (tombstones included), or None.
        pending_jobs: Unacknowledged local jobs for the same entity.
    """
    key = version_key(change)
    if stored_version is not None and key <= tuple(stored_version):
        return Resolution(Decision.SKIP_STALE, key)

    remote_ms = key[0]
    if any(j.created_at > remote_ms for j in pending_jobs):
        return Resolution(Decision.KEEP_LOCAL, key)

    reappend: List[Dict[str, Any]] = []
    if is_append_only(change.entity_type):
        body = _latest_local_body(sorted(pending_jobs, key=lambda j: j.created_at))
        remote_content = (change.data or {}).get("content")
        if body is not None and (
            change.operation == SyncOperation.DELETE or body.get("content") != remote_content
        ):
            reappend.append(body)
    return Resolution(Decision.APPLY, key, reappend=reappend)


def _latest_local_body(jobs: Sequence[Job]) -> Optional[Dict[str, Any]]:
    for job in reversed(jobs):
        if job.operation in ("create", "update") and job.payload.get("content"):
            return dict(job.payload)
    return None


def merge(
    entity_type: str,
    client_version: Dict[str, Any],
    server_version: Dict[str, Any],
) -> MergeResult:
    """
    Resolve a `merge_required` push conflict.

    Scalar entities take the server version. Comments keep the server version
    and re-append the client text when it differs.
    """
    if is_append_only(entity_type):
        client_content = (client_version or {}).get("content")
        if client_content and client_content != (server_version or {}).get("content"):
            return MergeResult(record=dict(server_version), reappend=dict(client_version))
    return MergeResult(record=dict(server_version))


def suggest_resolution(
    entity_type: str,
    local: Dict[str, Any],
    server: Dict[str, Any],
) -> ConflictResolution:
    """Default choice offered to the user for a parked conflict."""
    if entity_type == "reading_progress":
        local_page = int(local.get("last_page") or 0)
        server_page = int(server.get("last_page") or 0)
        return ConflictResolution.USE_LOCAL if local_page > server_page else ConflictResolution.USE_SERVER
    if entity_type in ("bookmark", "comment"):
        return ConflictResolution.USE_LOCAL
    return ConflictResolution.USE_SERVER


_DESCRIPTIONS = {
    "bookmark": "Bookmark was modified on another device",
    "comment": "Comment was edited on another device",
    "reading_progress": "Reading position differs between devices",
    "tag": "Tag was changed on another device",
    "document_tag": "Document tags were changed on another device",
    "share": "Sharing permissions were changed on another device",
}


def describe(entity_type: str) -> str:
    return _DESCRIPTIONS.get(entity_type, f"{entity_type} was modified on another device")


class ConflictResolver:
    """
    Conflict policy as one object, so the sync engine can take it as a
    collaborator (and tests can swap it).
    """

    version_key = staticmethod(version_key)
    apply_order = staticmethod(apply_order)
    resolve_remote = staticmethod(resolve_remote)
    merge = staticmethod(merge)
    suggest_resolution = staticmethod(suggest_resolution)
    describe = staticmethod(describe)
    is_append_only = staticmethod(is_append_only)
