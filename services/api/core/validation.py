"""
Validation utilities for the doclib sync service.
Ensures request data is sane and provides clear error messages.
"""
from typing import List, Optional
from fastapi import HTTPException

from models.job import ConflictResolution

MIN_DPI = 36
MAX_DPI = 600
MAX_PRELOAD_PAGES = 50
MAX_SEARCH_LIMIT = 200

ALLOWED_FORMATS = ("webp", "png", "jpeg")
ALLOWED_PERMISSIONS = ("view", "comment", "full")
ALLOWED_SUBJECT_TYPES = ("document", "folder")


def validate_page_number(page_number: int, page_count: Optional[int] = None) -> None:
    """
    Validate a 1-based page number.

    Rules:
    - page_number must be >= 1
    - if page_count is known, page_number must not exceed it

    Raises:
        HTTPException: 400 if validation fails
    """
    if page_number < 1:
        raise HTTPException(
            status_code=400,
            detail=f"page_number must be >= 1, got {page_number}"
        )
    if page_count is not None and page_count > 0 and page_number > page_count:
        raise HTTPException(
            status_code=400,
            detail=f"page_number {page_number} exceeds page count {page_count}"
        )


def validate_dpi(dpi: int) -> None:
    if not (MIN_DPI <= dpi <= MAX_DPI):
        raise HTTPException(
            status_code=400,
            detail=f"dpi must be in range [{MIN_DPI}, {MAX_DPI}], got {dpi}"
        )


def validate_preload_pages(pages: List[int]) -> List[int]:
    """
    Validate a list of pages to preload.

    Rules:
    - at least one page, at most MAX_PRELOAD_PAGES
    - every page >= 1
    - duplicates are dropped, order kept

    Returns:
        De-duplicated page list
    """
    if not pages:
        raise HTTPException(status_code=400, detail="At least one page is required")
    if len(pages) > MAX_PRELOAD_PAGES:
        raise HTTPException(
            status_code=400,
            detail=f"At most {MAX_PRELOAD_PAGES} pages can be preloaded at once, got {len(pages)}"
        )
    seen = set()
    unique = []
    for page in pages:
        validate_page_number(page)
        if page not in seen:
            seen.add(page)
            unique.append(page)
    return unique


def validate_permission(permission: str) -> str:
    value = (permission or "").lower().strip()
    if value not in ALLOWED_PERMISSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"permission must be one of {', '.join(ALLOWED_PERMISSIONS)}, got {permission!r}"
        )
    return value


def validate_subject_type(subject_type: str) -> str:
    value = (subject_type or "").lower().strip()
    if value not in ALLOWED_SUBJECT_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"subject_type must be 'document' or 'folder', got {subject_type!r}"
        )
    return value


def validate_search_limit(limit: int) -> None:
    if not (1 <= limit <= MAX_SEARCH_LIMIT):
        raise HTTPException(
            status_code=400,
            detail=f"limit must be in range [1, {MAX_SEARCH_LIMIT}], got {limit}"
        )


def coerce_conflict_resolution(value: str) -> ConflictResolution:
    try:
        return ConflictResolution((value or "").lower().strip())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"resolution must be use_local, use_server or merge, got {value!r}"
        )


def coerce_format(fmt: str | None, default: str = "webp") -> str:
    """
    Coerce image format to one of the allowed values.

    Args:
        fmt: Raw format value ("jpg" is accepted as "jpeg")
        default: Returned for empty or unknown values

    Returns:
        Coerced format: "webp", "png" or "jpeg"
    """
    if not fmt:
        return default

    fmt_lower = fmt.lower().strip().lstrip(".")
    if fmt_lower == "jpg":
        return "jpeg"
    if fmt_lower in ALLOWED_FORMATS:
        return fmt_lower

    # Default for invalid values
    return default
