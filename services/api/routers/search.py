# services/api/routers/search.py
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query

from core.search_index import SearchPagination
from core.validation import validate_search_limit
from routers.deps import Search
from schemas.search import SearchHit, SearchResponse

router = APIRouter(
    prefix="/search",
    tags=["search"],
)


@router.get("", response_model=SearchResponse)
async def search_documents(
    search: Search,
    q: str = Query(..., description="Free text; matched as a phrase"),
    page: int = Query(1, ge=1),
    limit: int = Query(50),
    library_id: Optional[List[str]] = Query(None),
    tag: Optional[List[str]] = Query(None),
    highlights: bool = False,
) -> SearchResponse:
    validate_search_limit(limit)
    pagination = SearchPagination(page=page, limit=limit)
    pagination.total = search.count(q, library_ids=library_id, tag_filters=tag)

    hits: List[Dict[str, Any]] = []
    if pagination.total and pagination.offset < pagination.total:
        hits = search.search(
            q,
            limit=limit,
            offset=pagination.offset,
            library_ids=library_id,
            tag_filters=tag,
            highlights=highlights,
        )

    return SearchResponse(
        query=q,
        results=[SearchHit(**h) for h in hits],
        page=pagination.page,
        limit=pagination.limit,
        total=pagination.total,
        total_pages=pagination.total_pages,
        has_next=pagination.has_next,
        has_previous=pagination.has_previous,
    )


@router.get("/suggestions")
async def search_suggestions(search: Search, q: str = "", limit: int = Query(10, ge=1, le=50)) -> List[str]:
    return search.suggestions(q, limit=limit)


@router.post("/rebuild")
async def rebuild_index(search: Search) -> Dict[str, Any]:
    await asyncio.to_thread(search.rebuild)
    return {"status": "ok", **search.statistics()}


@router.get("/stats")
async def index_stats(search: Search) -> Dict[str, Any]:
    return search.statistics()
