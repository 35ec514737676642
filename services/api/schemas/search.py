from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class SearchHit(BaseModel):
    doc_id: str
    title: Optional[str] = None
    author: Optional[str] = None
    filename: Optional[str] = None
    snippet: Optional[str] = None
    score: float = 0.0
    title_highlight: Optional[str] = None
    author_highlight: Optional[str] = None
    content_highlight: Optional[str] = None


class SearchResponse(BaseModel):
    query: str
    results: List[SearchHit] = Field(default_factory=list)
    page: int = 1
    limit: int = 50
    total: int = 0
    total_pages: int = 0
    has_next: bool = False
    has_previous: bool = False
