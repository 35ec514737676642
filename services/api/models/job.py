# services/api/models/job.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    CREATE_BOOKMARK = "create_bookmark"
    UPDATE_BOOKMARK = "update_bookmark"
    DELETE_BOOKMARK = "delete_bookmark"
    CREATE_COMMENT = "create_comment"
    UPDATE_COMMENT = "update_comment"
    DELETE_COMMENT = "delete_comment"
    UPDATE_READING_PROGRESS = "update_reading_progress"
    DELETE_READING_PROGRESS = "delete_reading_progress"
    CREATE_TAG = "create_tag"
    DELETE_TAG = "delete_tag"
    ADD_TAG_TO_DOCUMENT = "add_tag_to_document"
    REMOVE_TAG_FROM_DOCUMENT = "remove_tag_from_document"
    CREATE_SHARE = "create_share"
    UPDATE_SHARE = "update_share"
    DELETE_SHARE = "delete_share"

    @property
    def entity_type(self) -> str:
        return _JOB_TARGETS[self][0]

    @property
    def operation(self) -> str:
        return _JOB_TARGETS[self][1]


# job type -> (entity_type, operation)
_JOB_TARGETS: Dict[JobType, Tuple[str, str]] = {
    JobType.CREATE_BOOKMARK: ("bookmark", "create"),
    JobType.UPDATE_BOOKMARK: ("bookmark", "update"),
    JobType.DELETE_BOOKMARK: ("bookmark", "delete"),
    JobType.CREATE_COMMENT: ("comment", "create"),
    JobType.UPDATE_COMMENT: ("comment", "update"),
    JobType.DELETE_COMMENT: ("comment", "delete"),
    JobType.UPDATE_READING_PROGRESS: ("reading_progress", "update"),
    JobType.DELETE_READING_PROGRESS: ("reading_progress", "delete"),
    JobType.CREATE_TAG: ("tag", "create"),
    JobType.DELETE_TAG: ("tag", "delete"),
    JobType.ADD_TAG_TO_DOCUMENT: ("document_tag", "create"),
    JobType.REMOVE_TAG_FROM_DOCUMENT: ("document_tag", "delete"),
    JobType.CREATE_SHARE: ("share", "create"),
    JobType.UPDATE_SHARE: ("share", "update"),
    JobType.DELETE_SHARE: ("share", "delete"),
}


class ConflictResolution(str, Enum):
    """Manual choice for a job parked with a conflict error."""
    USE_LOCAL = "use_local"
    USE_SERVER = "use_server"
    MERGE = "merge"


@dataclass
class Job:
    """
    One queued local mutation.

    `created_at` doubles as the mutation's LWW timestamp; it comes from the
    monotonic clock so two jobs never share a value.
    """
    id: str
    type: JobType
    entity_type: str
    entity_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    created_at: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    scheduled_at: int = 0

    @property
    def operation(self) -> str:
        return self.type.operation

    @property
    def is_conflict(self) -> bool:
        return self.status == JobStatus.FAILED and "conflict" in (self.last_error or "").lower()

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        payload = row.get("payload") or "{}"
        if isinstance(payload, str):
            payload = json.loads(payload)
        return cls(
            id=row["id"],
            type=JobType(row["type"]),
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            payload=payload,
            status=JobStatus(row["status"]),
            created_at=int(row["created_at"]),
            attempts=int(row.get("attempts") or 0),
            last_error=row.get("last_error"),
            scheduled_at=int(row.get("scheduled_at") or row["created_at"]),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": json.dumps(self.payload, sort_keys=True),
            "status": self.status.value,
            "created_at": self.created_at,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "scheduled_at": self.scheduled_at,
        }


@dataclass
class JobQueueStatus:
    pending: int = 0
    processing: int = 0
    failed: int = 0
    last_updated: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.failed

    @property
    def has_work(self) -> bool:
        return self.pending > 0 or self.processing > 0

    @property
    def has_errors(self) -> bool:
        return self.failed > 0
