from __future__ import annotations

import json
from typing import Any, Dict, Optional

from core.clock import from_ms, parse_timestamp

# Column stamped with the change timestamp when the payload omits it
TIMESTAMP_COLUMN = {
    "document": "updated_at",
    "page": "created_at",
    "tag": "updated_at",
    "document_tag": "created_at",
    "bookmark": "updated_at",
    "comment": "updated_at",
    "share": "updated_at",
    "reading_progress": "updated_at",
}

_JSON_COLUMNS = {"anchor", "metadata_json"}
_LOCAL_ONLY = {"synced"}


def _decode_json(value: str) -> Any:
    """Stored JSON text back to its value; plain text is pushed as stored."""
    try:
        return json.loads(value)
    except ValueError:
        return value


def row_from_remote(
    entity_type: str,
    entity_id: str,
    data: Optional[Dict[str, Any]],
    timestamp_ms: int,
    existing: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build a local row from a server payload.

    Partial payloads (updates) overlay the existing row. ISO timestamps become
    epoch ms and nested JSON fields are stored as text. The row is marked
    synced because it mirrors server state.
    """
    row: Dict[str, Any] = dict(existing or {})
    for key, value in (data or {}).items():
        if key == "metadata":
            key = "metadata_json"
        if key in _LOCAL_ONLY:
            continue
        if key in _JSON_COLUMNS and value is not None and not isinstance(value, str):
            value = json.dumps(value, sort_keys=True)
        elif key.endswith("_at"):
            value = parse_timestamp(value)
        row[key] = value

    row["id"] = entity_id
    ts_col = TIMESTAMP_COLUMN.get(entity_type)
    if ts_col and not (data or {}).get(ts_col):
        row[ts_col] = timestamp_ms
    if entity_type == "document":
        row["synced_at"] = timestamp_ms
    else:
        row["synced"] = 1
    return row


def row_to_wire(entity_type: str, row: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of row_from_remote: what we push to the server."""
    out: Dict[str, Any] = {}
    for key, value in row.items():
        if key in _LOCAL_ONLY:
            continue
        if key in _JSON_COLUMNS and isinstance(value, str):
            value = _decode_json(value)
        elif key.endswith("_at") and isinstance(value, int):
            value = from_ms(value).isoformat()
        if key == "metadata_json":
            key = "metadata"
        out[key] = value
    return out
