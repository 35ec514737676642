"""
Request bodies for local (offline-capable) mutations.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


class BookmarkCreate(BaseModel):
    doc_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    page_number: int = Field(..., ge=1, description="1-based page number")
    note: Optional[str] = Field(None, max_length=2000)


class BookmarkUpdate(BaseModel):
    page_number: Optional[int] = Field(None, ge=1)
    note: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def _not_empty(self):
        if self.page_number is None and self.note is None:
            raise ValueError("Nothing to update")
        return self


class CommentCreate(BaseModel):
    doc_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    page_number: Optional[int] = Field(None, ge=1)
    anchor: Optional[Dict[str, Any]] = Field(None, description="Text selection / position anchor")
    content: str = Field(..., min_length=1, max_length=10000)


class CommentUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)


class TagCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    owner_id: Optional[str] = None


class DocumentTagCreate(BaseModel):
    tag_id: str = Field(..., min_length=1)


class ShareCreate(BaseModel):
    subject_id: str = Field(..., min_length=1)
    subject_type: str = Field("document", description="document | folder")
    owner_id: Optional[str] = None
    grantee_email: str = Field(..., min_length=3)
    permission: str = Field("view", description="view | comment | full")


class ShareUpdate(BaseModel):
    permission: str = Field(..., description="view | comment | full")


class ReadingProgressUpdate(BaseModel):
    user_id: str = Field(..., min_length=1)
    last_page: int = Field(..., ge=1)
