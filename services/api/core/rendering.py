"""
Page rendering with cache, native worker and server fallback.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from adapters.base import NativeRenderingWorker, RemoteSyncApi
from adapters.sqlite import SqliteAdapter
from core.clock import MonotonicClock, to_ms
from core.errors import CacheError, EntityNotFoundError, PageRenderingError
from core.page_cache import PageCacheStore

logger = logging.getLogger(__name__)


class PageRenderingService:
    """
    Resolves a page image in this order:
      1) page cache
      2) native worker (local file required), or the server first when
         prefer_native is False
      3) the other of the two
    Every fresh render is written back to the cache; a failed write-back is
    logged and the image is still returned.
    """

    def __init__(
        self,
        store: SqliteAdapter,
        cache: PageCacheStore,
        worker: Optional[NativeRenderingWorker] = None,
        api: Optional[RemoteSyncApi] = None,
        clock: Optional[MonotonicClock] = None,
        default_dpi: int = 150,
        default_format: str = "webp",
        prefer_native: bool = True,
    ):
        self.store = store
        self.cache = cache
        self.worker = worker
        self.api = api
        self.clock = clock or MonotonicClock()
        self.default_dpi = default_dpi
        self.default_format = default_format
        self.prefer_native = prefer_native
        self.stats: Dict[str, int] = {
            "native_renders": 0,
            "api_renders": 0,
            "cache_hits": 0,
            "failures": 0,
            "cache_write_failures": 0,
        }

    # ---------- rendering ----------

    async def render_page(
        self,
        doc_id: str,
        page_number: int,
        dpi: Optional[int] = None,
        fmt: Optional[str] = None,
        use_cache: bool = True,
    ) -> bytes:
        dpi = dpi or self.default_dpi
        fmt = fmt or self.default_format

        if use_cache:
            cached = self.cache.get_page(doc_id, page_number, dpi, fmt)
            if cached is not None:
                self.stats["cache_hits"] += 1
                return cached

        strategies = [("native", self._render_native), ("api", self._render_via_api)]
        if not self.prefer_native:
            strategies.reverse()

        errors: List[str] = []
        for name, strategy in strategies:
            try:
                data = await strategy(doc_id, page_number, dpi, fmt)
            except Exception as e:
                logger.warning(f"{name} render failed for {doc_id} p{page_number}: {e}")
                errors.append(f"{name}: {e}")
                continue
            if not data:
                errors.append(f"{name}: empty image")
                continue
            self.stats[f"{name}_renders"] += 1
            try:
                self.cache.put_page(doc_id, page_number, dpi, data, fmt)
            except CacheError as e:
                # The image is still good; only the write-back is lost
                logger.warning(f"Could not cache {doc_id} p{page_number}: {e}")
                self.stats["cache_write_failures"] += 1
            return data

        self.stats["failures"] += 1
        raise PageRenderingError(
            "All rendering methods failed: " + "; ".join(errors),
            doc_id=doc_id,
            page_number=page_number,
        )

    def _local_path(self, doc_id: str) -> str:
        doc = self.store.get_entity("document", doc_id)
        if doc is None:
            raise EntityNotFoundError("document", doc_id)
        path = doc.get("full_path")
        if not path or not os.path.isfile(path):
            raise PageRenderingError("Document file is not available locally", doc_id=doc_id)
        return path

    async def _render_native(self, doc_id: str, page_number: int, dpi: int, fmt: str) -> bytes:
        if self.worker is None or not self.worker.is_available():
            raise PageRenderingError("Native worker unavailable", doc_id, page_number)
        worker_fmt = getattr(self.worker, "image_format", fmt)
        if worker_fmt != fmt:
            raise PageRenderingError(f"Native worker renders {worker_fmt}, not {fmt}", doc_id, page_number)
        path = self._local_path(doc_id)
        return await asyncio.to_thread(self.worker.render_page, path, page_number, dpi)

    async def _render_via_api(self, doc_id: str, page_number: int, dpi: int, fmt: str) -> bytes:
        if self.api is None:
            raise PageRenderingError("No server connection configured", doc_id, page_number)
        render = await self.api.render_page(doc_id, page_number, dpi, fmt)
        if to_ms(render.expires_at) <= self.clock.now_ms():
            raise PageRenderingError("Signed render URL already expired", doc_id, page_number)
        return await self.api.download(render.signed_url)

    async def preload_pages(
        self,
        doc_id: str,
        page_numbers: Iterable[int],
        dpi: Optional[int] = None,
        fmt: Optional[str] = None,
    ) -> Dict[str, int]:
        """Warm the cache for upcoming pages. Failures are counted, not raised."""
        dpi = dpi or self.default_dpi
        fmt = fmt or self.default_format
        report = {"cached": 0, "rendered": 0, "failed": 0}
        for page_number in page_numbers:
            if self.cache.has_page(doc_id, page_number, dpi, fmt):
                report["cached"] += 1
                continue
            try:
                await self.render_page(doc_id, page_number, dpi, fmt)
                report["rendered"] += 1
            except (PageRenderingError, EntityNotFoundError) as e:
                logger.warning(f"Preload failed for {doc_id} p{page_number}: {e}")
                report["failed"] += 1
        return report

    def is_page_cached(self, doc_id: str, page_number: int, dpi: Optional[int] = None, fmt: Optional[str] = None) -> bool:
        return self.cache.has_page(doc_id, page_number, dpi or self.default_dpi, fmt or self.default_format)

    def clear_document_cache(self, doc_id: str) -> int:
        return self.cache.clear_document(doc_id)

    def statistics(self) -> Dict[str, Any]:
        total = self.stats["native_renders"] + self.stats["api_renders"] + self.stats["cache_hits"]
        return {
            **self.stats,
            "total_requests": total + self.stats["failures"],
            "cache_hit_rate": round(self.stats["cache_hits"] / total * 100, 2) if total else 0.0,
            "native_available": bool(self.worker and self.worker.is_available()),
        }

    # ---------- text extraction ----------

    async def get_page_count(self, doc_id: str) -> int:
        if self.worker is None or not self.worker.is_available():
            raise PageRenderingError("Native worker unavailable", doc_id)
        return await asyncio.to_thread(self.worker.get_page_count, self._local_path(doc_id))

    async def index_document_text(self, doc_id: str) -> int:
        """
        Extract text for every page into `pages`; FTS triggers pick it up.

        Returns:
            Number of pages written.
        """
        page_count = await self.get_page_count(doc_id)
        path = self._local_path(doc_id)
        written = 0
        for page_number in range(1, page_count + 1):
            content = await asyncio.to_thread(self.worker.extract_text, path, page_number)
            with self.store.begin() as conn:
                existing = self.store.find_by_natural_key(
                    "page", {"doc_id": doc_id, "page_number": page_number}, conn=conn
                )
                row = dict(existing or {})
                row.update(
                    id=row.get("id") or str(uuid4()),
                    doc_id=doc_id,
                    page_number=page_number,
                    text_content=content,
                    created_at=row.get("created_at") or self.clock.now_ms(),
                )
                self.store.upsert_entity("page", row, conn=conn)
            written += 1
        logger.info(f"Indexed text of {written} pages for {doc_id}")
        return written
