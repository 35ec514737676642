"""
Pydantic schemas for the sync wire protocol (manifest pull / push).
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

ENTITY_TYPES = (
    "document",
    "page",
    "tag",
    "document_tag",
    "bookmark",
    "comment",
    "share",
    "reading_progress",
)


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConflictKind(str, Enum):
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGE_REQUIRED = "merge_required"


class SyncChange(BaseModel):
    """One entity mutation, either pulled from the manifest or pushed from the queue."""
    change_id: Optional[str] = Field(None, description="Client job id for pushed changes")
    entity_type: str = Field(..., description="Wire entity type, e.g. 'bookmark'")
    entity_id: str = Field(..., min_length=1)
    operation: SyncOperation
    data: Optional[Dict[str, Any]] = Field(None, description="Entity fields (absent for deletes)")
    timestamp: datetime = Field(..., description="Monotonic mutation timestamp used for LWW")

    @field_validator("entity_type")
    @classmethod
    def _known_entity_type(cls, v: str) -> str:
        if v not in ENTITY_TYPES:
            raise ValueError(f"unknown entity_type {v!r}")
        return v


class SyncManifest(BaseModel):
    """Server delta since the client's checkpoint."""
    timestamp: datetime
    changes: List[SyncChange] = Field(default_factory=list)
    checksum: str = Field("", description="sha256 of canonical JSON of `changes`; empty = unchecked")
    # Set by the HTTP client from the raw response body
    received_digest: Optional[str] = Field(None, exclude=True)


class SyncPushRequest(BaseModel):
    changes: List[SyncChange]
    client_timestamp: datetime


class SyncConflict(BaseModel):
    entity_id: str
    entity_type: str
    client_version: Dict[str, Any] = Field(default_factory=dict)
    server_version: Dict[str, Any] = Field(default_factory=dict)
    resolution: str = Field(..., description="server_wins | client_wins | merge_required")


class SyncPushResponse(BaseModel):
    accepted_changes: List[str] = Field(default_factory=list, description="Accepted change_ids")
    conflicts: List[SyncConflict] = Field(default_factory=list)
    server_timestamp: datetime


class RenderResponse(BaseModel):
    """Signed URL returned by the server-side page renderer."""
    signed_url: str
    expires_at: datetime


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"
    OFFLINE = "offline"


class SyncProgress(BaseModel):
    status: SyncStatus = SyncStatus.IDLE
    total_changes: int = 0
    processed_changes: int = 0
    failed_changes: int = 0
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def progress(self) -> float:
        if self.total_changes <= 0:
            return 0.0
        return self.processed_changes / self.total_changes


class ConflictResolveRequest(BaseModel):
    resolution: str = Field(..., description="use_local | use_server | merge")
