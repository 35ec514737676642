# services/api/routers/pages.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel, Field

from core.errors import EntityNotFoundError, PageRenderingError
from core.validation import coerce_format, validate_dpi, validate_page_number, validate_preload_pages
from routers.deps import Renderer, raise_http

router = APIRouter(
    prefix="/pages",
    tags=["pages"],
)

MEDIA_TYPES = {"webp": "image/webp", "png": "image/png", "jpeg": "image/jpeg"}


class PreloadRequest(BaseModel):
    pages: List[int] = Field(..., description="1-based page numbers")
    dpi: Optional[int] = None
    format: Optional[str] = None


@router.get("/stats")
async def rendering_stats(renderer: Renderer) -> Dict[str, Any]:
    return renderer.statistics()


@router.get("/{doc_id}/{page_number}")
async def render_page(
    doc_id: str,
    page_number: int,
    renderer: Renderer,
    dpi: Optional[int] = Query(None),
    format: Optional[str] = Query(None, description="webp | png | jpeg"),
    use_cache: bool = True,
) -> Response:
    """
    Page image from the local cache, rendered natively from the local PDF,
    or fetched from the server's render endpoint (in that order).
    """
    validate_page_number(page_number)
    if dpi is not None:
        validate_dpi(dpi)
    fmt = coerce_format(format, default=renderer.default_format)

    try:
        data = await renderer.render_page(doc_id, page_number, dpi=dpi, fmt=fmt, use_cache=use_cache)
    except (EntityNotFoundError, PageRenderingError) as e:
        raise_http(e)

    return Response(
        content=data,
        media_type=MEDIA_TYPES[fmt],
        headers={"Cache-Control": "private, max-age=3600"},
    )


@router.post("/{doc_id}/preload")
async def preload_pages(doc_id: str, body: PreloadRequest, renderer: Renderer) -> Dict[str, Any]:
    pages = validate_preload_pages(body.pages)
    if body.dpi is not None:
        validate_dpi(body.dpi)
    fmt = coerce_format(body.format, default=renderer.default_format)
    report = await renderer.preload_pages(doc_id, pages, dpi=body.dpi, fmt=fmt)
    return {"doc_id": doc_id, "requested": len(pages), **report}


@router.post("/{doc_id}/index-text")
async def index_text(doc_id: str, renderer: Renderer) -> Dict[str, Any]:
    try:
        written = await renderer.index_document_text(doc_id)
    except (EntityNotFoundError, PageRenderingError) as e:
        raise_http(e)
    return {"status": "ok", "doc_id": doc_id, "pages_indexed": written}
