# services/api/routers/annotations.py
"""
Offline-capable edits: bookmarks, comments, tags, shares and reading progress.

Each write is stored locally and queued for the next push; responses return
the local row (synced = 0 until the server acknowledges it).
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from core.errors import EntityNotFoundError
from core.validation import validate_page_number, validate_permission, validate_subject_type
from routers.deps import Mutations, raise_http
from schemas.annotations import (
    BookmarkCreate,
    BookmarkUpdate,
    CommentCreate,
    CommentUpdate,
    DocumentTagCreate,
    ReadingProgressUpdate,
    ShareCreate,
    ShareUpdate,
    TagCreate,
)

router = APIRouter(tags=["annotations"])


# ---------- bookmarks ----------

@router.get("/documents/{doc_id}/bookmarks")
async def list_bookmarks(doc_id: str, mutations: Mutations, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    return mutations.list_bookmarks(doc_id=doc_id, user_id=user_id)


@router.post("/bookmarks", status_code=status.HTTP_201_CREATED)
async def create_bookmark(body: BookmarkCreate, mutations: Mutations) -> Dict[str, Any]:
    validate_page_number(body.page_number)
    return mutations.create_bookmark(body.doc_id, body.page_number, note=body.note, user_id=body.user_id)


@router.patch("/bookmarks/{bookmark_id}")
async def update_bookmark(bookmark_id: str, body: BookmarkUpdate, mutations: Mutations) -> Dict[str, Any]:
    try:
        return mutations.update_bookmark(bookmark_id, page_number=body.page_number, note=body.note)
    except EntityNotFoundError as e:
        raise_http(e)


@router.delete("/bookmarks/{bookmark_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_bookmark(bookmark_id: str, mutations: Mutations) -> None:
    try:
        mutations.delete_bookmark(bookmark_id)
    except EntityNotFoundError as e:
        raise_http(e)


# ---------- comments ----------

@router.get("/documents/{doc_id}/comments")
async def list_comments(doc_id: str, mutations: Mutations) -> List[Dict[str, Any]]:
    return mutations.list_comments(doc_id)


@router.post("/comments", status_code=status.HTTP_201_CREATED)
async def add_comment(body: CommentCreate, mutations: Mutations) -> Dict[str, Any]:
    return mutations.add_comment(
        body.doc_id,
        body.content,
        page_number=body.page_number,
        anchor=body.anchor,
        user_id=body.user_id,
    )


@router.patch("/comments/{comment_id}")
async def update_comment(comment_id: str, body: CommentUpdate, mutations: Mutations) -> Dict[str, Any]:
    try:
        return mutations.update_comment(comment_id, body.content)
    except EntityNotFoundError as e:
        raise_http(e)


@router.delete("/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(comment_id: str, mutations: Mutations) -> None:
    try:
        mutations.delete_comment(comment_id)
    except EntityNotFoundError as e:
        raise_http(e)


# ---------- tags ----------

@router.get("/tags")
async def list_tags(mutations: Mutations, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
    return mutations.list_tags(owner_id=owner_id)


@router.post("/tags", status_code=status.HTTP_201_CREATED)
async def create_tag(body: TagCreate, mutations: Mutations) -> Dict[str, Any]:
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Tag name must not be blank")
    return mutations.create_tag(name, owner_id=body.owner_id)


@router.delete("/tags/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tag(tag_id: str, mutations: Mutations) -> None:
    try:
        mutations.delete_tag(tag_id)
    except EntityNotFoundError as e:
        raise_http(e)


@router.get("/documents/{doc_id}/tags")
async def document_tags(doc_id: str, mutations: Mutations) -> List[Dict[str, Any]]:
    return mutations.tags_for_document(doc_id)


@router.post("/documents/{doc_id}/tags", status_code=status.HTTP_201_CREATED)
async def tag_document(doc_id: str, body: DocumentTagCreate, mutations: Mutations) -> Dict[str, Any]:
    try:
        return mutations.add_tag_to_document(doc_id, body.tag_id)
    except EntityNotFoundError as e:
        raise_http(e)


@router.delete("/documents/{doc_id}/tags/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
async def untag_document(doc_id: str, tag_id: str, mutations: Mutations) -> None:
    try:
        mutations.remove_tag_from_document(doc_id, tag_id)
    except EntityNotFoundError as e:
        raise_http(e)


# ---------- shares ----------

@router.get("/shares")
async def list_shares(mutations: Mutations, subject_id: Optional[str] = None) -> List[Dict[str, Any]]:
    return mutations.list_shares(subject_id=subject_id)


@router.post("/shares", status_code=status.HTTP_201_CREATED)
async def create_share(body: ShareCreate, mutations: Mutations) -> Dict[str, Any]:
    return mutations.create_share(
        body.subject_id,
        body.grantee_email,
        permission=validate_permission(body.permission),
        subject_type=validate_subject_type(body.subject_type),
        owner_id=body.owner_id,
    )


@router.patch("/shares/{share_id}")
async def update_share(share_id: str, body: ShareUpdate, mutations: Mutations) -> Dict[str, Any]:
    permission = validate_permission(body.permission)
    try:
        return mutations.update_share(share_id, permission)
    except EntityNotFoundError as e:
        raise_http(e)


@router.delete("/shares/{share_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_share(share_id: str, mutations: Mutations) -> None:
    try:
        mutations.delete_share(share_id)
    except EntityNotFoundError as e:
        raise_http(e)


# ---------- reading progress ----------

@router.get("/documents/{doc_id}/progress")
async def get_progress(doc_id: str, mutations: Mutations, user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    row = mutations.get_reading_progress(user_id, doc_id)
    if row is None:
        raise HTTPException(status_code=404, detail="No reading progress for this document")
    return row


@router.put("/documents/{doc_id}/progress")
async def update_progress(doc_id: str, body: ReadingProgressUpdate, mutations: Mutations) -> Dict[str, Any]:
    validate_page_number(body.last_page)
    return mutations.update_reading_progress(body.user_id, doc_id, body.last_page)


@router.delete("/documents/{doc_id}/progress", status_code=status.HTTP_204_NO_CONTENT)
async def delete_progress(doc_id: str, mutations: Mutations, user_id: str = Query(..., min_length=1)) -> None:
    try:
        mutations.delete_reading_progress(user_id, doc_id)
    except EntityNotFoundError as e:
        raise_http(e)
