"""
Local (offline-capable) mutations.

Every method writes the entity row with synced=0 and queues the matching job
in the same transaction. The job payload is the wire form of the row, so the
push needs nothing but the queue.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.engine import Connection

from adapters.sqlite import SqliteAdapter
from core.clock import MonotonicClock
from core.conflict_resolver import canonical_json
from core.errors import EntityNotFoundError
from core.job_queue import OfflineJobQueue
from models.converters import row_to_wire
from models.job import JobType

logger = logging.getLogger(__name__)


class LocalMutationService:
    def __init__(self, store: SqliteAdapter, job_queue: OfflineJobQueue, clock: Optional[MonotonicClock] = None):
        self.store = store
        self.job_queue = job_queue
        self.clock = clock or job_queue.clock

    # ---------- helpers ----------

    def _require(self, entity_type: str, entity_id: str, conn: Connection) -> Dict[str, Any]:
        row = self.store.get_entity(entity_type, entity_id, conn=conn)
        if row is None:
            raise EntityNotFoundError(entity_type, entity_id)
        return row

    def _write(self, entity_type: str, job_type: JobType, row: Dict[str, Any], conn: Connection) -> Dict[str, Any]:
        self.store.upsert_entity(entity_type, row, conn=conn)
        self.job_queue.add_job(job_type, row_to_wire(entity_type, row), entity_id=row["id"], conn=conn)
        logger.debug(f"Local {job_type.value} {row['id']}")
        return row

    def _remove(self, entity_type: str, job_type: JobType, row: Dict[str, Any], conn: Connection) -> None:
        self.store.delete_entity(entity_type, row["id"], conn=conn)
        self.job_queue.add_job(job_type, row_to_wire(entity_type, row), entity_id=row["id"], conn=conn)

    # ---------- bookmarks ----------

    def create_bookmark(
        self, doc_id: str, page_number: int, note: Optional[str] = None, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        now = self.clock.now_ms()
        row = dict(
            id=str(uuid4()),
            user_id=user_id,
            doc_id=doc_id,
            page_number=page_number,
            note=note,
            created_at=now,
            updated_at=now,
            synced=0,
        )
        with self.store.begin() as conn:
            return self._write("bookmark", JobType.CREATE_BOOKMARK, row, conn)

    def update_bookmark(
        self, bookmark_id: str, page_number: Optional[int] = None, note: Optional[str] = None
    ) -> Dict[str, Any]:
        with self.store.begin() as conn:
            row = self._require("bookmark", bookmark_id, conn)
            if page_number is not None:
                row["page_number"] = page_number
            if note is not None:
                row["note"] = note
            row.update(updated_at=self.clock.now_ms(), synced=0)
            return self._write("bookmark", JobType.UPDATE_BOOKMARK, row, conn)

    def delete_bookmark(self, bookmark_id: str) -> None:
        with self.store.begin() as conn:
            self._remove("bookmark", JobType.DELETE_BOOKMARK, self._require("bookmark", bookmark_id, conn), conn)

    def list_bookmarks(self, doc_id: Optional[str] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.store.list_entities("bookmark", order_by="page_number", doc_id=doc_id, user_id=user_id)

    # ---------- comments ----------

    def add_comment(
        self,
        doc_id: str,
        content: str,
        page_number: Optional[int] = None,
        anchor: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = self.clock.now_ms()
        row = dict(
            id=str(uuid4()),
            doc_id=doc_id,
            user_id=user_id,
            page_number=page_number,
            anchor=anchor,
            content=content,
            created_at=now,
            updated_at=now,
            synced=0,
        )
        if anchor is not None:
            row["anchor"] = canonical_json(anchor)
        with self.store.begin() as conn:
            return self._write("comment", JobType.CREATE_COMMENT, row, conn)

    def update_comment(self, comment_id: str, content: str) -> Dict[str, Any]:
        with self.store.begin() as conn:
            row = self._require("comment", comment_id, conn)
            row.update(content=content, updated_at=self.clock.now_ms(), synced=0)
            return self._write("comment", JobType.UPDATE_COMMENT, row, conn)

    def delete_comment(self, comment_id: str) -> None:
        with self.store.begin() as conn:
            self._remove("comment", JobType.DELETE_COMMENT, self._require("comment", comment_id, conn), conn)

    def list_comments(self, doc_id: str) -> List[Dict[str, Any]]:
        return self.store.list_entities("comment", order_by="created_at", doc_id=doc_id)

    # ---------- tags ----------

    def create_tag(self, name: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        now = self.clock.now_ms()
        row = dict(id=str(uuid4()), owner_id=owner_id, name=name.strip(), created_at=now, updated_at=now, synced=0)
        with self.store.begin() as conn:
            return self._write("tag", JobType.CREATE_TAG, row, conn)

    def delete_tag(self, tag_id: str) -> None:
        with self.store.begin() as conn:
            self._remove("tag", JobType.DELETE_TAG, self._require("tag", tag_id, conn), conn)

    def list_tags(self, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.store.list_entities("tag", order_by="name", owner_id=owner_id)

    def add_tag_to_document(self, doc_id: str, tag_id: str) -> Dict[str, Any]:
        with self.store.begin() as conn:
            self._require("tag", tag_id, conn)
            existing = self.store.find_by_natural_key("document_tag", {"doc_id": doc_id, "tag_id": tag_id}, conn=conn)
            if existing:
                return existing
            row = dict(id=str(uuid4()), doc_id=doc_id, tag_id=tag_id, created_at=self.clock.now_ms(), synced=0)
            return self._write("document_tag", JobType.ADD_TAG_TO_DOCUMENT, row, conn)

    def remove_tag_from_document(self, doc_id: str, tag_id: str) -> None:
        with self.store.begin() as conn:
            existing = self.store.find_by_natural_key("document_tag", {"doc_id": doc_id, "tag_id": tag_id}, conn=conn)
            if existing is None:
                raise EntityNotFoundError("document_tag", f"{doc_id}/{tag_id}")
            self._remove("document_tag", JobType.REMOVE_TAG_FROM_DOCUMENT, existing, conn)

    def tags_for_document(self, doc_id: str) -> List[Dict[str, Any]]:
        return self.store.tags_for_document(doc_id)

    # ---------- shares ----------

    def create_share(
        self,
        subject_id: str,
        grantee_email: str,
        permission: str = "view",
        subject_type: str = "document",
        owner_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = self.clock.now_ms()
        row = dict(
            id=str(uuid4()),
            subject_id=subject_id,
            subject_type=subject_type,
            owner_id=owner_id,
            grantee_email=grantee_email.strip().lower(),
            permission=permission,
            created_at=now,
            updated_at=now,
            synced=0,
        )
        with self.store.begin() as conn:
            return self._write("share", JobType.CREATE_SHARE, row, conn)

    def update_share(self, share_id: str, permission: str) -> Dict[str, Any]:
        with self.store.begin() as conn:
            row = self._require("share", share_id, conn)
            row.update(permission=permission, updated_at=self.clock.now_ms(), synced=0)
            return self._write("share", JobType.UPDATE_SHARE, row, conn)

    def delete_share(self, share_id: str) -> None:
        with self.store.begin() as conn:
            self._remove("share", JobType.DELETE_SHARE, self._require("share", share_id, conn), conn)

    def list_shares(self, subject_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.store.list_entities("share", order_by="created_at", subject_id=subject_id)

    # ---------- reading progress ----------

    def get_reading_progress(self, user_id: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self.store.find_by_natural_key("reading_progress", {"user_id": user_id, "doc_id": doc_id})

    def update_reading_progress(self, user_id: str, doc_id: str, last_page: int) -> Dict[str, Any]:
        with self.store.begin() as conn:
            existing = self.store.find_by_natural_key(
                "reading_progress", {"user_id": user_id, "doc_id": doc_id}, conn=conn
            )
            row = dict(
                id=existing["id"] if existing else str(uuid4()),
                user_id=user_id,
                doc_id=doc_id,
                last_page=last_page,
                updated_at=self.clock.now_ms(),
                synced=0,
            )
            return self._write("reading_progress", JobType.UPDATE_READING_PROGRESS, row, conn)

    def delete_reading_progress(self, user_id: str, doc_id: str) -> None:
        with self.store.begin() as conn:
            existing = self.store.find_by_natural_key(
                "reading_progress", {"user_id": user_id, "doc_id": doc_id}, conn=conn
            )
            if existing is None:
                raise EntityNotFoundError("reading_progress", f"{user_id}/{doc_id}")
            self._remove("reading_progress", JobType.DELETE_READING_PROGRESS, existing, conn)
