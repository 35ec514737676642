# services/api/models/cache_entry.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


def page_cache_key(doc_id: str, page_number: int, dpi: int, fmt: str) -> str:
    return f"{doc_id}_page_{page_number}_{dpi}_{fmt}"


def thumbnail_cache_key(doc_id: str, fmt: str) -> str:
    return f"{doc_id}_thumb_{fmt}"


@dataclass
class CacheEntry:
    """Metadata row for one cached image; the bytes live in a shared blob."""
    key: str
    doc_id: str
    format: str
    sha256: str
    size_bytes: int
    last_accessed: int
    created_at: int
    page_number: Optional[int] = None
    dpi: Optional[int] = None
    kind: str = "page"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CacheEntry":
        return cls(**{k: row[k] for k in cls.__dataclass_fields__ if k in row})

    def blob_name(self) -> str:
        return f"{self.sha256}.{self.format}"
