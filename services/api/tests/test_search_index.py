"""
Tests for the local FTS5 search index.

Run with: pytest tests/test_search_index.py -v
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.search_index import LocalSearchIndex, SearchPagination, escape_query


def _add_document(store, doc_id, title, author=None, library_id="lib-1", filename=None):
    store.upsert_entity(
        "document",
        {
            "id": doc_id,
            "library_id": library_id,
            "title": title,
            "author": author,
            "filename": filename or f"{doc_id}.pdf",
        },
    )


def _add_page(store, doc_id, page_number, text):
    store.upsert_entity(
        "page",
        {"id": f"{doc_id}-p{page_number}", "doc_id": doc_id, "page_number": page_number, "text_content": text},
    )


def _tag(store, doc_id, tag_id, name):
    store.upsert_entity("tag", {"id": tag_id, "name": name})
    store.upsert_entity("document_tag", {"id": f"{doc_id}-{tag_id}", "doc_id": doc_id, "tag_id": tag_id})


class TestEscapeQuery:
    """User input is always matched literally."""

    def test_wrapped_as_phrase(self):
        assert escape_query("hello world") == '"hello world"'

    def test_quotes_doubled(self):
        assert escape_query('say "hi"') == '"say ""hi"""'

    def test_operators_neutralized(self):
        assert escape_query("title:foo*") == '"titlefoo"'
        assert escape_query("  ") == ""
        assert escape_query(None) == ""


class TestSearch:
    """Tests for ranked matching over documents, pages and tags."""

    def test_matches_title_author_filename(self, store, search_index):
        _add_document(store, "d1", "Deep Learning", author="Goodfellow")
        _add_document(store, "d2", "Cooking Basics", filename="recipes.pdf")

        assert [h["doc_id"] for h in search_index.search("learning")] == ["d1"]
        assert [h["doc_id"] for h in search_index.search("goodfellow")] == ["d1"]
        assert [h["doc_id"] for h in search_index.search("recipes")] == ["d2"]

    def test_page_text_indexed_after_document(self, store, search_index):
        _add_document(store, "d1", "Report")
        _add_page(store, "d1", 1, "quarterly revenue figures")
        assert [h["doc_id"] for h in search_index.search("revenue")] == ["d1"]

    def test_page_arriving_before_document(self, store, search_index):
        _add_page(store, "d1", 1, "orphan text until the document lands")
        assert search_index.search("orphan") == []
        _add_document(store, "d1", "Late document")
        assert [h["doc_id"] for h in search_index.search("orphan")] == ["d1"]

    def test_tags_indexed_and_renamed(self, store, search_index):
        _add_document(store, "d1", "Paper")
        _tag(store, "d1", "t1", "astronomy")
        assert [h["doc_id"] for h in search_index.search("astronomy")] == ["d1"]

        store.upsert_entity("tag", {"id": "t1", "name": "cosmology"})
        assert search_index.search("astronomy") == []
        assert [h["doc_id"] for h in search_index.search("cosmology")] == ["d1"]

    def test_deleted_document_disappears(self, store, search_index):
        _add_document(store, "d1", "Ephemeral")
        store.delete_entity("document", "d1")
        assert search_index.search("ephemeral") == []

    def test_hit_shape_and_ranking(self, store, search_index):
        _add_document(store, "d1", "Python", author="Someone")
        _add_document(store, "d2", "Python Python Python")
        hits = search_index.search("python")
        assert {h["doc_id"] for h in hits} == {"d1", "d2"}
        assert set(hits[0]) >= {"doc_id", "title", "author", "filename", "snippet", "score"}
        assert hits[0]["score"] <= hits[1]["score"]

    def test_highlights(self, store, search_index):
        _add_document(store, "d1", "Graph Theory")
        (hit,) = search_index.search_with_highlights("graph")
        assert "<mark>" in hit["title_highlight"].lower()

    def test_special_characters_do_not_error(self, store, search_index):
        _add_document(store, "d1", "C++ Primer")
        for query in ('c++', 'AND OR', '"unbalanced', "a:b", "(x)"):
            search_index.search(query)

    def test_filters(self, store, search_index):
        _add_document(store, "d1", "Algebra notes", library_id="lib-a")
        _add_document(store, "d2", "Algebra exam", library_id="lib-b")
        _tag(store, "d2", "t1", "exam")

        assert [h["doc_id"] for h in search_index.search("algebra", library_ids=["lib-a"])] == ["d1"]
        assert [h["doc_id"] for h in search_index.search("algebra", tag_filters=["exam"])] == ["d2"]
        assert search_index.count("algebra") == 2
        assert search_index.count("algebra", library_ids=["lib-b"]) == 1

    def test_pagination(self, store, search_index):
        for i in range(5):
            _add_document(store, f"d{i}", f"Series volume {i}")
        first = search_index.search("series", limit=2, offset=0)
        rest = search_index.search("series", limit=10, offset=2)
        assert len(first) == 2
        assert len(rest) == 3
        assert not {h["doc_id"] for h in first} & {h["doc_id"] for h in rest}


class TestPaginationHelper:
    def test_pages(self):
        p = SearchPagination(page=2, limit=10, total=25)
        assert p.offset == 10
        assert p.total_pages == 3
        assert p.has_next
        assert p.has_previous

    def test_empty(self):
        p = SearchPagination(page=1, limit=10, total=0)
        assert p.total_pages == 0
        assert not p.has_next
        assert not p.has_previous


class TestMaintenance:
    """Tests for suggestions, rebuild and statistics."""

    def test_suggestions_prefix(self, store, search_index):
        _add_document(store, "d1", "Statistics 101", author="Stan")
        _add_document(store, "d2", "100% Pure", filename="pure.pdf")
        assert search_index.suggestions("sta") == ["Stan", "Statistics 101"]
        assert search_index.suggestions("100%") == ["100% Pure"]
        assert search_index.suggestions("") == []

    def test_initialize_backfills_existing_documents(self, store):
        _add_document(store, "d1", "Before index")
        index = LocalSearchIndex(store)
        index.initialize()
        assert [h["doc_id"] for h in index.search("before")] == ["d1"]

    def test_rebuild_and_statistics(self, store, search_index):
        _add_document(store, "d1", "One")
        _add_document(store, "d2", "Two")
        _add_page(store, "d1", 1, "text")
        search_index.rebuild()
        stats = search_index.statistics()
        assert stats == {
            "indexed_documents": 2,
            "total_documents": 2,
            "pages_with_text": 1,
            "is_complete": True,
        }

    def test_recreate(self, store, search_index):
        _add_document(store, "d1", "Survivor")
        search_index.recreate()
        assert search_index.is_initialized()
        assert [h["doc_id"] for h in search_index.search("survivor")] == ["d1"]

    def test_refresh_recomputes_rows(self, store, search_index):
        _add_document(store, "d1", "Refreshable")
        search_index.index_document_content("d1", "stale override")
        assert [h["doc_id"] for h in search_index.search("override")] == ["d1"]
        assert search_index.refresh(["d1"]) == 1
        assert search_index.search("override") == []
