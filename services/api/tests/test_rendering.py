"""
Tests for page rendering: cache first, then native worker, then server.

Run with: pytest tests/test_rendering.py -v
"""
import asyncio
from datetime import datetime, timezone

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.errors import CacheError, EntityNotFoundError, PageRenderingError
from core.rendering import PageRenderingService


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def local_doc(store, tmp_path):
    path = tmp_path / "book.pdf"
    path.write_bytes(b"%PDF-1.4 stand-in")
    store.upsert_entity("document", {"id": "d1", "title": "Book", "full_path": str(path)})
    return "d1"


@pytest.fixture
def renderer(store, page_cache, fake_worker, fake_api, clock):
    return PageRenderingService(store, page_cache, worker=fake_worker, api=fake_api, clock=clock)


class TestRenderPage:
    """Tests for the render fallback chain."""

    def test_native_render_cached(self, renderer, local_doc, fake_worker, page_cache):
        data = run(renderer.render_page(local_doc, 1))
        assert data == b"native:book.pdf:1:150"
        assert page_cache.get_page(local_doc, 1, 150, "webp") == data

        again = run(renderer.render_page(local_doc, 1))
        assert again == data
        assert fake_worker.render_calls == 1
        assert renderer.stats["cache_hits"] == 1
        assert renderer.stats["native_renders"] == 1

    def test_bypass_cache(self, renderer, local_doc, fake_worker):
        run(renderer.render_page(local_doc, 1))
        run(renderer.render_page(local_doc, 1, use_cache=False))
        assert fake_worker.render_calls == 2

    def test_falls_back_to_server_without_local_file(self, renderer, store, fake_api):
        store.upsert_entity("document", {"id": "remote-only", "title": "Cloud"})
        data = run(renderer.render_page("remote-only", 2, dpi=200))
        assert data == b"server:remote-only:2:200"
        assert renderer.stats["api_renders"] == 1

    def test_native_skipped_for_other_format(self, renderer, local_doc, fake_worker, fake_api):
        data = run(renderer.render_page(local_doc, 1, fmt="png"))
        assert data.startswith(b"server:")
        assert fake_worker.render_calls == 0

    def test_server_first_when_preferred(self, store, page_cache, fake_worker, fake_api, clock, local_doc):
        renderer = PageRenderingService(
            store, page_cache, worker=fake_worker, api=fake_api, clock=clock, prefer_native=False
        )
        assert run(renderer.render_page(local_doc, 1)).startswith(b"server:")
        assert fake_worker.render_calls == 0

    def test_expired_signed_url_rejected(self, renderer, store, fake_api):
        store.upsert_entity("document", {"id": "remote-only", "title": "Cloud"})
        fake_api.render_expires_at = datetime(2000, 1, 1, tzinfo=timezone.utc)
        with pytest.raises(PageRenderingError) as exc:
            run(renderer.render_page("remote-only", 1))
        assert "expired" in str(exc.value)
        assert renderer.stats["failures"] == 1

    def test_all_strategies_fail(self, renderer, local_doc, fake_worker, fake_api):
        fake_worker.available = False
        fake_api.online = False
        with pytest.raises(PageRenderingError) as exc:
            run(renderer.render_page(local_doc, 3))
        assert exc.value.doc_id == local_doc
        assert exc.value.page_number == 3
        assert "native" in str(exc.value) and "api" in str(exc.value)


class TestPreload:
    def test_counts(self, renderer, local_doc, store, fake_api):
        run(renderer.render_page(local_doc, 1))
        fake_api.online = False
        store.upsert_entity("document", {"id": "gone", "title": "No file"})

        report = run(renderer.preload_pages(local_doc, [1, 2]))
        assert report == {"cached": 1, "rendered": 1, "failed": 0}

        report = run(renderer.preload_pages("gone", [1]))
        assert report == {"cached": 0, "rendered": 0, "failed": 1}

    def test_is_page_cached(self, renderer, local_doc):
        assert not renderer.is_page_cached(local_doc, 1)


class TestCacheWriteFailure:
    @pytest.fixture
    def full_disk(self, page_cache, monkeypatch):
        def fail(*args, **kwargs):
            raise CacheError("Failed to write cache blob: disk full")

        monkeypatch.setattr(page_cache, "put_page", fail)

    def test_render_still_returned(self, renderer, local_doc, full_disk):
        data = run(renderer.render_page(local_doc, 1))
        assert data == b"native:book.pdf:1:150"
        assert renderer.stats["native_renders"] == 1
        assert renderer.stats["cache_write_failures"] == 1
        assert renderer.stats["failures"] == 0
        assert not renderer.is_page_cached(local_doc, 1)

    def test_preload_continues_past_failed_write(self, renderer, local_doc, full_disk):
        report = run(renderer.preload_pages(local_doc, [1, 2, 3]))
        assert report == {"cached": 0, "rendered": 3, "failed": 0}
        run(renderer.render_page(local_doc, 1))
        assert renderer.is_page_cached(local_doc, 1)
        assert renderer.clear_document_cache(local_doc) == 1
        assert not renderer.is_page_cached(local_doc, 1)


class TestTextIndexing:
    def test_index_document_text_feeds_search(self, renderer, local_doc, store, search_index):
        assert run(renderer.index_document_text(local_doc)) == 2
        pages = store.list_entities("page", order_by="page_number", doc_id=local_doc)
        assert [p["text_content"] for p in pages] == ["first page", "second page"]
        assert [h["doc_id"] for h in search_index.search("second")] == [local_doc]

    def test_reindex_keeps_page_ids(self, renderer, local_doc, store, fake_worker):
        run(renderer.index_document_text(local_doc))
        ids = [p["id"] for p in store.list_entities("page", order_by="page_number")]
        fake_worker.pages = ["changed one", "changed two"]
        run(renderer.index_document_text(local_doc))
        assert [p["id"] for p in store.list_entities("page", order_by="page_number")] == ids

    def test_unknown_document(self, renderer):
        with pytest.raises(EntityNotFoundError):
            run(renderer.index_document_text("missing"))

    def test_statistics(self, renderer, local_doc):
        run(renderer.render_page(local_doc, 1))
        run(renderer.render_page(local_doc, 1))
        stats = renderer.statistics()
        assert stats["total_requests"] == 2
        assert stats["cache_hit_rate"] == 50.0
        assert stats["native_available"] is True
