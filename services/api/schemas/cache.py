from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class CacheStats(BaseModel):
    total_entries: int
    total_size_bytes: int
    average_size_bytes: float
    max_size_bytes: int
    usage_percentage: float
    is_near_limit: bool
    blob_count: int
    oldest_access: Optional[int] = None
    newest_access: Optional[int] = None


class CacheConfigUpdate(BaseModel):
    max_size_mb: Optional[int] = Field(None, description="Clamped to 50..2000")
    expiry_days: Optional[int] = Field(None, ge=1)


class CacheOptimizeRequest(BaseModel):
    target_mb: Optional[int] = Field(None, ge=0)
