"""
Pydantic schemas for API request/response validation.
"""
from .sync import (
    ConflictKind,
    ConflictResolveRequest,
    RenderResponse,
    SyncChange,
    SyncConflict,
    SyncManifest,
    SyncOperation,
    SyncProgress,
    SyncPushRequest,
    SyncPushResponse,
    SyncStatus,
)
from .annotations import (
    BookmarkCreate,
    BookmarkUpdate,
    CommentCreate,
    CommentUpdate,
    DocumentTagCreate,
    ReadingProgressUpdate,
    ShareCreate,
    ShareUpdate,
    TagCreate,
)
from .cache import CacheConfigUpdate, CacheOptimizeRequest, CacheStats
from .search import SearchHit, SearchResponse

__all__ = [
    "ConflictKind",
    "ConflictResolveRequest",
    "RenderResponse",
    "SyncChange",
    "SyncConflict",
    "SyncManifest",
    "SyncOperation",
    "SyncProgress",
    "SyncPushRequest",
    "SyncPushResponse",
    "SyncStatus",
    "BookmarkCreate",
    "BookmarkUpdate",
    "CommentCreate",
    "CommentUpdate",
    "DocumentTagCreate",
    "ReadingProgressUpdate",
    "ShareCreate",
    "ShareUpdate",
    "TagCreate",
    "CacheConfigUpdate",
    "CacheOptimizeRequest",
    "CacheStats",
    "SearchHit",
    "SearchResponse",
]
