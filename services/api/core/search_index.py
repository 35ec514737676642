"""
Local full-text search over documents (SQLite FTS5).

One FTS row per document holds the searchable fields: title, author,
filename, concatenated page text and tag names. Triggers on the source tables
keep the rows current for local writes and applied sync changes alike, so
callers never write to documents_fts directly except through this module.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection

from adapters.sqlite import SqliteAdapter

logger = logging.getLogger(__name__)

FTS_TABLE = "documents_fts"

_PAGE_TEXT_SQL = (
    "(SELECT group_concat(text_content, ' ') FROM "
    "(SELECT text_content FROM pages WHERE doc_id = {ref} AND text_content IS NOT NULL "
    "ORDER BY page_number))"
)
_TAG_NAMES_SQL = (
    "(SELECT group_concat(name, ' ') FROM "
    "(SELECT t.name AS name FROM tags t JOIN document_tags dt ON dt.tag_id = t.id "
    "WHERE dt.doc_id = {ref} ORDER BY t.name))"
)


def _page_text(ref: str) -> str:
    return _PAGE_TEXT_SQL.format(ref=ref)


def _tag_names(ref: str) -> str:
    return _TAG_NAMES_SQL.format(ref=ref)


_CREATE_FTS = f"""
CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5(
    doc_id UNINDEXED,
    title,
    author,
    filename,
    text_content,
    tags,
    tokenize = 'porter'
)
"""

_TRIGGERS = {
    "documents_fts_ai": f"""
        CREATE TRIGGER IF NOT EXISTS documents_fts_ai AFTER INSERT ON documents BEGIN
            DELETE FROM {FTS_TABLE} WHERE doc_id = new.id;
            INSERT INTO {FTS_TABLE}(doc_id, title, author, filename, text_content, tags)
            VALUES (new.id, new.title, new.author, new.filename,
                    {_page_text('new.id')}, {_tag_names('new.id')});
        END
    """,
    "documents_fts_au": f"""
        CREATE TRIGGER IF NOT EXISTS documents_fts_au AFTER UPDATE ON documents BEGIN
            UPDATE {FTS_TABLE}
               SET title = new.title, author = new.author, filename = new.filename
             WHERE doc_id = new.id;
        END
    """,
    "documents_fts_ad": f"""
        CREATE TRIGGER IF NOT EXISTS documents_fts_ad AFTER DELETE ON documents BEGIN
            DELETE FROM {FTS_TABLE} WHERE doc_id = old.id;
        END
    """,
    "pages_fts_ai": f"""
        CREATE TRIGGER IF NOT EXISTS pages_fts_ai AFTER INSERT ON pages BEGIN
            UPDATE {FTS_TABLE} SET text_content = {_page_text('new.doc_id')}
             WHERE doc_id = new.doc_id;
        END
    """,
    "pages_fts_au": f"""
        CREATE TRIGGER IF NOT EXISTS pages_fts_au AFTER UPDATE ON pages BEGIN
            UPDATE {FTS_TABLE} SET text_content = {_page_text('new.doc_id')}
             WHERE doc_id = new.doc_id;
        END
    """,
    "pages_fts_ad": f"""
        CREATE TRIGGER IF NOT EXISTS pages_fts_ad AFTER DELETE ON pages BEGIN
            UPDATE {FTS_TABLE} SET text_content = {_page_text('old.doc_id')}
             WHERE doc_id = old.doc_id;
        END
    """,
    "document_tags_fts_ai": f"""
        CREATE TRIGGER IF NOT EXISTS document_tags_fts_ai AFTER INSERT ON document_tags BEGIN
            UPDATE {FTS_TABLE} SET tags = {_tag_names('new.doc_id')}
             WHERE doc_id = new.doc_id;
        END
    """,
    "document_tags_fts_ad": f"""
        CREATE TRIGGER IF NOT EXISTS document_tags_fts_ad AFTER DELETE ON document_tags BEGIN
            UPDATE {FTS_TABLE} SET tags = {_tag_names('old.doc_id')}
             WHERE doc_id = old.doc_id;
        END
    """,
    "tags_fts_au": f"""
        CREATE TRIGGER IF NOT EXISTS tags_fts_au AFTER UPDATE OF name ON tags BEGIN
            UPDATE {FTS_TABLE} SET tags = {_tag_names(FTS_TABLE + '.doc_id')}
             WHERE doc_id IN (SELECT doc_id FROM document_tags WHERE tag_id = new.id);
        END
    """,
}

_INSERT_ROW = f"""
    INSERT INTO {FTS_TABLE}(doc_id, title, author, filename, text_content, tags)
    SELECT d.id, d.title, d.author, d.filename, {_page_text('d.id')}, {_tag_names('d.id')}
      FROM documents d
"""


def escape_query(query: str) -> str:
    """
    Turn user input into a safe FTS5 expression.

    Quotes are doubled, `*` and `:` dropped, and the result is wrapped as a
    phrase so operators and punctuation in user text are matched literally.
    """
    cleaned = (query or "").replace('"', '""').replace("*", "").replace(":", "").strip()
    if not cleaned:
        return ""
    return f'"{cleaned}"'


@dataclass
class SearchPagination:
    page: int = 1
    limit: int = 50
    total: int = 0

    @property
    def offset(self) -> int:
        return (max(self.page, 1) - 1) * self.limit

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit > 0 else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


class LocalSearchIndex:
    def __init__(self, store: SqliteAdapter):
        self.store = store

    # ---------- schema ----------

    def initialize(self) -> None:
        """Create the FTS table and triggers (idempotent). Backfills an empty index."""
        with self.store.begin() as c:
            c.exec_driver_sql(_CREATE_FTS)
            for ddl in _TRIGGERS.values():
                c.exec_driver_sql(ddl)
            indexed = c.exec_driver_sql(f"SELECT count(*) FROM {FTS_TABLE}").scalar()
            documents = c.exec_driver_sql("SELECT count(*) FROM documents").scalar()
            if documents and not indexed:
                c.exec_driver_sql(_INSERT_ROW)
                logger.info(f"Backfilled search index with {documents} documents")

    def is_initialized(self) -> bool:
        with self.store.begin() as c:
            row = c.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'table' AND name = :n"),
                {"n": FTS_TABLE},
            ).first()
            return row is not None

    def recreate(self) -> None:
        with self.store.begin() as c:
            for name in _TRIGGERS:
                c.exec_driver_sql(f"DROP TRIGGER IF EXISTS {name}")
            c.exec_driver_sql(f"DROP TABLE IF EXISTS {FTS_TABLE}")
        self.initialize()
        self.rebuild()

    # ---------- queries ----------

    def _filters(self, library_ids, tag_filters) -> tuple:
        clauses: List[str] = []
        params: Dict[str, Any] = {}
        binds = []
        if library_ids:
            clauses.append("AND d.library_id IN :library_ids")
            params["library_ids"] = list(library_ids)
            binds.append(bindparam("library_ids", expanding=True))
        if tag_filters:
            clauses.append(
                f"AND {FTS_TABLE}.doc_id IN (SELECT dt.doc_id FROM document_tags dt "
                "JOIN tags t ON t.id = dt.tag_id WHERE t.name IN :tag_names)"
            )
            params["tag_names"] = list(tag_filters)
            binds.append(bindparam("tag_names", expanding=True))
        return " ".join(clauses), params, binds

    def count(
        self,
        query: str,
        library_ids: Optional[Iterable[str]] = None,
        tag_filters: Optional[Iterable[str]] = None,
    ) -> int:
        expr = escape_query(query)
        if not expr:
            return 0
        where, params, binds = self._filters(library_ids, tag_filters)
        stmt = text(
            f"SELECT count(*) FROM {FTS_TABLE} JOIN documents d ON d.id = {FTS_TABLE}.doc_id "
            f"WHERE {FTS_TABLE} MATCH :q {where}"
        ).bindparams(*binds)
        with self.store.begin() as c:
            return int(c.execute(stmt, {"q": expr, **params}).scalar() or 0)

    def search(
        self,
        query: str,
        limit: int = 50,
        offset: int = 0,
        library_ids: Optional[Iterable[str]] = None,
        tag_filters: Optional[Iterable[str]] = None,
        highlights: bool = False,
    ) -> List[Dict[str, Any]]:
        """bm25-ranked matches (best first) with a highlighted title snippet."""
        expr = escape_query(query)
        if not expr:
            return []
        extra = ""
        if highlights:
            extra = (
                f", highlight({FTS_TABLE}, 1, '<mark>', '</mark>') AS title_highlight"
                f", highlight({FTS_TABLE}, 2, '<mark>', '</mark>') AS author_highlight"
                f", snippet({FTS_TABLE}, 4, '<mark>', '</mark>', '...', 64) AS content_highlight"
            )
        where, params, binds = self._filters(library_ids, tag_filters)
        stmt = text(
            f"SELECT {FTS_TABLE}.doc_id AS doc_id, d.title AS title, d.author AS author, "
            f"d.filename AS filename, "
            f"snippet({FTS_TABLE}, 1, '<mark>', '</mark>', '...', 32) AS snippet, "
            f"bm25({FTS_TABLE}) AS score{extra} "
            f"FROM {FTS_TABLE} JOIN documents d ON d.id = {FTS_TABLE}.doc_id "
            f"WHERE {FTS_TABLE} MATCH :q {where} "
            "ORDER BY score LIMIT :limit OFFSET :offset"
        ).bindparams(*binds)
        with self.store.begin() as c:
            rows = c.execute(
                stmt, {"q": expr, "limit": int(limit), "offset": int(offset), **params}
            ).mappings().all()
        return [dict(r) for r in rows]

    def search_with_highlights(self, query: str, **kwargs: Any) -> List[Dict[str, Any]]:
        return self.search(query, highlights=True, **kwargs)

    def suggestions(self, partial: str, limit: int = 10) -> List[str]:
        """Prefix matches over title, author and filename."""
        prefix = (partial or "").strip()
        if not prefix:
            return []
        pattern = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        stmt = text(
            "SELECT value FROM ("
            "  SELECT title AS value FROM documents WHERE title LIKE :p ESCAPE '\\'"
            "  UNION SELECT author FROM documents WHERE author LIKE :p ESCAPE '\\'"
            "  UNION SELECT filename FROM documents WHERE filename LIKE :p ESCAPE '\\'"
            ") WHERE value IS NOT NULL ORDER BY length(value), value LIMIT :limit"
        )
        with self.store.begin() as c:
            return [r.value for r in c.execute(stmt, {"p": pattern, "limit": int(limit)})]

    # ---------- maintenance ----------

    def index_document_content(self, doc_id: str, content: str, conn: Optional[Connection] = None) -> None:
        """Override the indexed text of a document (the next page write recomputes it)."""
        with self.store.begin(conn) as c:
            c.execute(
                text(f"UPDATE {FTS_TABLE} SET text_content = :t WHERE doc_id = :d"),
                {"t": content, "d": doc_id},
            )

    def index_document_tags(self, doc_id: str, tag_names: Iterable[str], conn: Optional[Connection] = None) -> None:
        with self.store.begin(conn) as c:
            c.execute(
                text(f"UPDATE {FTS_TABLE} SET tags = :t WHERE doc_id = :d"),
                {"t": " ".join(sorted(tag_names)), "d": doc_id},
            )

    def refresh(self, doc_ids: Iterable[str], conn: Optional[Connection] = None) -> int:
        """Recompute the rows for the given documents from the source tables."""
        ids = sorted({d for d in doc_ids if d})
        if not ids:
            return 0
        delete_stmt = text(f"DELETE FROM {FTS_TABLE} WHERE doc_id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        insert_stmt = text(f"{_INSERT_ROW} WHERE d.id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        with self.store.begin(conn) as c:
            c.execute(delete_stmt, {"ids": ids})
            c.execute(insert_stmt, {"ids": ids})
        logger.debug(f"Refreshed search index for {len(ids)} documents")
        return len(ids)

    def rebuild(self) -> None:
        with self.store.begin() as c:
            c.exec_driver_sql(f"DELETE FROM {FTS_TABLE}")
            c.exec_driver_sql(_INSERT_ROW)
        self.optimize()
        logger.info("Search index rebuilt")

    def optimize(self) -> None:
        with self.store.begin() as c:
            c.exec_driver_sql(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES('optimize')")

    def statistics(self) -> Dict[str, Any]:
        with self.store.begin() as c:
            indexed = c.exec_driver_sql(f"SELECT count(*) FROM {FTS_TABLE}").scalar()
            documents = c.exec_driver_sql("SELECT count(*) FROM documents").scalar()
            pages_with_text = c.exec_driver_sql(
                "SELECT count(*) FROM pages WHERE text_content IS NOT NULL AND text_content != ''"
            ).scalar()
        return {
            "indexed_documents": int(indexed or 0),
            "total_documents": int(documents or 0),
            "pages_with_text": int(pages_with_text or 0),
            "is_complete": int(indexed or 0) == int(documents or 0),
        }
