# services/api/adapters/sqlite/__init__.py
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    delete,
    event,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

# ---- Engine (SQLite) with WAL & pragmas -------------------------------------

def _ensure_dir(path: str):
    d = os.path.dirname(path)
    if d and not os.path.isdir(d):
        os.makedirs(d, exist_ok=True)

def make_engine(db_url: str) -> Engine:
    # Create data dir if sqlite file
    if db_url.startswith("sqlite:///"):
        file_path = db_url.replace("sqlite:///", "", 1)
        _ensure_dir(file_path)

    engine = create_engine(db_url, future=True, pool_pre_ping=True)

    # Apply pragmas per-connection
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore
        if isinstance(dbapi_connection, sqlite3.Connection):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA temp_store=MEMORY;")
            cursor.execute("PRAGMA mmap_size=268435456;")  # 256MB
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    return engine

# ---- Schema via SQLAlchemy Core ---------------------------------------------
# All timestamps are epoch milliseconds (UTC).
# Synced entities deliberately carry no FOREIGN KEYs: remote changes arrive in
# any order, so a bookmark may land before its document. Document deletion
# cascades in SqliteAdapter.delete_entity instead.

metadata = MetaData()

documents = Table(
    "documents",
    metadata,
    Column("id", String, primary_key=True),
    Column("library_id", String),
    Column("title", Text),
    Column("author", Text),
    Column("filename", Text),
    Column("full_path", Text),
    Column("extension", String),
    Column("format", String),
    Column("sha256", String),
    Column("size_bytes", Integer),
    Column("page_count", Integer),
    Column("status", String),
    Column("metadata_json", Text),
    Column("created_at", Integer),
    Column("updated_at", Integer),
    Column("synced_at", Integer),
)

pages = Table(
    "pages",
    metadata,
    Column("id", String, primary_key=True),
    Column("doc_id", String, nullable=False),
    Column("page_number", Integer, nullable=False),
    Column("text_content", Text),
    Column("thumbnail_url", Text),
    Column("created_at", Integer),
    UniqueConstraint("doc_id", "page_number", name="uq_pages_doc_page"),
)

tags = Table(
    "tags",
    metadata,
    Column("id", String, primary_key=True),
    Column("owner_id", String),
    Column("name", String, nullable=False),
    Column("created_at", Integer),
    Column("updated_at", Integer),
    Column("synced", Integer, nullable=False, default=0),
)

document_tags = Table(
    "document_tags",
    metadata,
    Column("id", String, primary_key=True),
    Column("doc_id", String, nullable=False),
    Column("tag_id", String, nullable=False),
    Column("created_at", Integer),
    Column("synced", Integer, nullable=False, default=0),
    UniqueConstraint("doc_id", "tag_id", name="uq_document_tags_pair"),
)

bookmarks = Table(
    "bookmarks",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String),
    Column("doc_id", String, nullable=False),
    Column("page_number", Integer, nullable=False),
    Column("note", Text),
    Column("created_at", Integer),
    Column("updated_at", Integer),
    Column("synced", Integer, nullable=False, default=0),
)

comments = Table(
    "comments",
    metadata,
    Column("id", String, primary_key=True),
    Column("doc_id", String, nullable=False),
    Column("user_id", String),
    Column("page_number", Integer),
    Column("anchor", Text),  # JSON text
    Column("content", Text, nullable=False),
    Column("created_at", Integer),
    Column("updated_at", Integer),
    Column("synced", Integer, nullable=False, default=0),
)

shares = Table(
    "shares",
    metadata,
    Column("id", String, primary_key=True),
    Column("subject_id", String, nullable=False),
    Column("subject_type", String, nullable=False),
    Column("owner_id", String),
    Column("grantee_email", String),
    Column("permission", String, nullable=False, default="view"),
    Column("created_at", Integer),
    Column("updated_at", Integer),
    Column("synced", Integer, nullable=False, default=0),
    CheckConstraint("subject_type IN ('document', 'folder')", name="ck_share_subject_type"),
    CheckConstraint("permission IN ('view', 'comment', 'full')", name="ck_share_permission"),
)

reading_progress = Table(
    "reading_progress",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False),
    Column("doc_id", String, nullable=False),
    Column("last_page", Integer, nullable=False),
    Column("updated_at", Integer),
    Column("synced", Integer, nullable=False, default=0),
    UniqueConstraint("user_id", "doc_id", name="uq_progress_user_doc"),
)

jobs_queue = Table(
    "jobs_queue",
    metadata,
    Column("id", String, primary_key=True),
    Column("type", String, nullable=False),
    Column("entity_type", String, nullable=False),
    Column("entity_id", String, nullable=False),
    Column("payload", Text, nullable=False),  # JSON text
    Column("status", String, nullable=False, default="pending"),
    Column("created_at", Integer, nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("scheduled_at", Integer, nullable=False),
    CheckConstraint(
        "status IN ('pending', 'processing', 'completed', 'failed')",
        name="ck_job_status",
    ),
)

cache_metadata = Table(
    "cache_metadata",
    metadata,
    Column("key", String, primary_key=True),
    Column("doc_id", String, nullable=False),
    Column("page_number", Integer),
    Column("dpi", Integer),
    Column("format", String, nullable=False),
    Column("kind", String, nullable=False, default="page"),  # page | thumbnail
    Column("sha256", String, nullable=False),
    Column("size_bytes", Integer, nullable=False),
    Column("last_accessed", Integer, nullable=False),
    Column("created_at", Integer, nullable=False),
)

sync_metadata = Table(
    "sync_metadata",
    metadata,
    Column("key", String, primary_key=True),
    Column("value", Text),
    Column("updated_at", Integer),
)

# Last remote version applied per entity (tombstones included)
entity_versions = Table(
    "entity_versions",
    metadata,
    Column("entity_type", String, nullable=False),
    Column("entity_id", String, nullable=False),
    Column("timestamp", Integer, nullable=False),
    Column("op_rank", Integer, nullable=False),
    Column("digest", String, nullable=False),
    PrimaryKeyConstraint("entity_type", "entity_id", name="pk_entity_versions"),
)

Index("idx_documents_library", documents.c.library_id)
Index("idx_pages_doc", pages.c.doc_id)
Index("idx_tags_owner_name", tags.c.owner_id, tags.c.name)
Index("idx_document_tags_tag", document_tags.c.tag_id)
Index("idx_bookmarks_doc", bookmarks.c.doc_id)
Index("idx_bookmarks_user", bookmarks.c.user_id)
Index("idx_comments_doc", comments.c.doc_id)
Index("idx_shares_subject", shares.c.subject_id)
Index("idx_jobs_status_sched", jobs_queue.c.status, jobs_queue.c.scheduled_at)
Index("idx_jobs_entity", jobs_queue.c.entity_type, jobs_queue.c.entity_id)
Index("idx_cache_last_accessed", cache_metadata.c.last_accessed)
Index("idx_cache_doc", cache_metadata.c.doc_id)
Index("idx_cache_sha", cache_metadata.c.sha256)

# Wire entity type -> table
ENTITY_TABLES: Dict[str, Table] = {
    "document": documents,
    "page": pages,
    "tag": tags,
    "document_tag": document_tags,
    "bookmark": bookmarks,
    "comment": comments,
    "share": shares,
    "reading_progress": reading_progress,
}

# Secondary unique keys: a remote row with a new id replaces the local row
# holding the same natural key.
NATURAL_KEYS: Dict[str, tuple] = {
    "page": ("doc_id", "page_number"),
    "document_tag": ("doc_id", "tag_id"),
    "reading_progress": ("user_id", "doc_id"),
}

# Entity types that hang off a document and are removed with it
_DOCUMENT_CHILDREN = ("page", "document_tag", "bookmark", "comment", "reading_progress")


def entity_table(entity_type: str) -> Table:
    try:
        return ENTITY_TABLES[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None

# ---- Adapter implementation --------------------------------------------------

@dataclass(frozen=True)
class SqliteAdapter:
    engine: Engine

    @classmethod
    def from_url(cls, db_url: str = "sqlite:///data/doclib.db") -> "SqliteAdapter":
        eng = make_engine(db_url)
        metadata.create_all(eng)
        return cls(engine=eng)

    @contextmanager
    def begin(self, conn: Optional[Connection] = None) -> Iterator[Connection]:
        """Join the caller's transaction if one is given, else open a new one."""
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as new_conn:
            yield new_conn

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1").fetchone()

    # Entities
    def get_entity(
        self, entity_type: str, entity_id: str, conn: Optional[Connection] = None
    ) -> Optional[Dict[str, Any]]:
        table = entity_table(entity_type)
        with self.begin(conn) as c:
            row = c.execute(select(table).where(table.c.id == entity_id)).mappings().first()
            return dict(row) if row else None

    def find_by_natural_key(
        self, entity_type: str, values: Dict[str, Any], conn: Optional[Connection] = None
    ) -> Optional[Dict[str, Any]]:
        keys = NATURAL_KEYS.get(entity_type)
        if not keys or any(values.get(k) is None for k in keys):
            return None
        table = entity_table(entity_type)
        cond = and_(*[table.c[k] == values[k] for k in keys])
        with self.begin(conn) as c:
            row = c.execute(select(table).where(cond)).mappings().first()
            return dict(row) if row else None

    def upsert_entity(
        self, entity_type: str, row: Dict[str, Any], conn: Optional[Connection] = None
    ) -> None:
        """
        Insert or update a row by primary key.

        ON CONFLICT DO UPDATE (not INSERT OR REPLACE) so only the given
        columns change and no delete is implied.
        """
        table = entity_table(entity_type)
        values = {k: v for k, v in row.items() if k in table.c}
        if "id" not in values:
            raise ValueError(f"{entity_type} row has no id")

        with self.begin(conn) as c:
            existing_natural = self.find_by_natural_key(entity_type, values, conn=c)
            if existing_natural and existing_natural["id"] != values["id"]:
                c.execute(delete(table).where(table.c.id == existing_natural["id"]))

            stmt = sqlite_insert(table).values(**values)
            changes = {k: stmt.excluded[k] for k in values if k != "id"}
            if changes:
                stmt = stmt.on_conflict_do_update(index_elements=[table.c.id], set_=changes)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=[table.c.id])
            c.execute(stmt)

    def delete_entity(
        self,
        entity_type: str,
        entity_id: str,
        conn: Optional[Connection] = None,
        version: Optional[tuple] = None,
    ) -> int:
        """
        Delete a row and cascade to the rows that hang off it.

        With `version` (a remote delete), children whose own remote version is
        newer than the delete are kept.
        """
        table = entity_table(entity_type)
        with self.begin(conn) as c:
            if entity_type == "document":
                for child_type in _DOCUMENT_CHILDREN:
                    child = entity_table(child_type)
                    self._cascade(c, child_type, child.c.doc_id == entity_id, version)
                self._cascade(
                    c,
                    "share",
                    and_(shares.c.subject_type == "document", shares.c.subject_id == entity_id),
                    version,
                )
            elif entity_type == "tag":
                self._cascade(c, "document_tag", document_tags.c.tag_id == entity_id, version)
            res = c.execute(delete(table).where(table.c.id == entity_id))
            return res.rowcount or 0

    def _cascade(self, c: Connection, entity_type: str, cond, version: Optional[tuple]) -> int:
        table = entity_table(entity_type)
        ids = [r.id for r in c.execute(select(table.c.id).where(cond)).all()]
        if version is not None:
            ids = [i for i in ids if not self._newer_than(entity_type, i, version, c)]
        if not ids:
            return 0
        return c.execute(delete(table).where(table.c.id.in_(ids))).rowcount or 0

    def _newer_than(self, entity_type: str, entity_id: str, version: tuple, conn: Connection) -> bool:
        stored = self.get_entity_version(entity_type, entity_id, conn=conn)
        return stored is not None and tuple(stored) > tuple(version)

    def mark_synced(self, entity_type: str, entity_id: str, conn: Optional[Connection] = None) -> None:
        table = entity_table(entity_type)
        if "synced" not in table.c:
            return
        with self.begin(conn) as c:
            c.execute(update(table).where(table.c.id == entity_id).values(synced=1))

    def list_entities(
        self,
        entity_type: str,
        conn: Optional[Connection] = None,
        order_by: Optional[str] = None,
        **filters: Any,
    ) -> List[Dict[str, Any]]:
        table = entity_table(entity_type)
        q = select(table)
        for col, val in filters.items():
            if val is not None:
                q = q.where(table.c[col] == val)
        if order_by:
            q = q.order_by(table.c[order_by].asc())
        with self.begin(conn) as c:
            return [dict(r) for r in c.execute(q).mappings().all()]

    def tags_for_document(self, doc_id: str, conn: Optional[Connection] = None) -> List[Dict[str, Any]]:
        q = (
            select(tags)
            .select_from(tags.join(document_tags, document_tags.c.tag_id == tags.c.id))
            .where(document_tags.c.doc_id == doc_id)
            .order_by(tags.c.name.asc())
        )
        with self.begin(conn) as c:
            return [dict(r) for r in c.execute(q).mappings().all()]

    def documents_for_tag(self, tag_id: str, conn: Optional[Connection] = None) -> List[str]:
        with self.begin(conn) as c:
            rows = c.execute(
                select(document_tags.c.doc_id).where(document_tags.c.tag_id == tag_id)
            ).all()
            return [r.doc_id for r in rows]

    # Entity versions
    def get_entity_version(
        self, entity_type: str, entity_id: str, conn: Optional[Connection] = None
    ) -> Optional[tuple]:
        with self.begin(conn) as c:
            row = c.execute(
                select(entity_versions.c.timestamp, entity_versions.c.op_rank, entity_versions.c.digest)
                .where(
                    and_(
                        entity_versions.c.entity_type == entity_type,
                        entity_versions.c.entity_id == entity_id,
                    )
                )
            ).first()
            return (row.timestamp, row.op_rank, row.digest) if row else None

    def set_entity_version(
        self, entity_type: str, entity_id: str, version: tuple, conn: Optional[Connection] = None
    ) -> None:
        timestamp, op_rank, digest = version
        stmt = sqlite_insert(entity_versions).values(
            entity_type=entity_type,
            entity_id=entity_id,
            timestamp=timestamp,
            op_rank=op_rank,
            digest=digest,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[entity_versions.c.entity_type, entity_versions.c.entity_id],
            set_={
                "timestamp": stmt.excluded.timestamp,
                "op_rank": stmt.excluded.op_rank,
                "digest": stmt.excluded.digest,
            },
        )
        with self.begin(conn) as c:
            c.execute(stmt)

    # Sync metadata (key/value)
    def get_sync_value(self, key: str, conn: Optional[Connection] = None) -> Optional[str]:
        with self.begin(conn) as c:
            row = c.execute(select(sync_metadata.c.value).where(sync_metadata.c.key == key)).first()
            return row.value if row else None

    def set_sync_value(
        self, key: str, value: Optional[str], now_ms: int, conn: Optional[Connection] = None
    ) -> None:
        stmt = sqlite_insert(sync_metadata).values(key=key, value=value, updated_at=now_ms)
        stmt = stmt.on_conflict_do_update(
            index_elements=[sync_metadata.c.key],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        with self.begin(conn) as c:
            c.execute(stmt)

    def dispose(self) -> None:
        self.engine.dispose()
