"""Wire format for records stored in a Bitable table.

Field names and value shapes the remote table uses:

    id         text, the record UUID
    title      text
    content    text
    tags       text, JSON array of tag names
    isFavorite single select, "是" / "否"
    createdAt  number, millisecond epoch
    updatedAt  number, millisecond epoch
    lastUsed   number, millisecond epoch (created time when never used)

Decoding is lenient because rows may have been edited by hand in the table
UI. Rows without an id or timestamps cannot take part in reconciliation and
decode to None.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from promptsync.types import MAX_MILLIS, MIN_MILLIS, Record, Tag, from_millis, to_millis

logger = logging.getLogger(__name__)

FAVORITE_YES = "是"
FAVORITE_NO = "否"
UNTITLED = "Untitled"

FIELD_NAMES = ("id", "title", "content", "tags", "isFavorite", "createdAt", "updatedAt", "lastUsed")


def encode_fields(record: Record) -> Dict[str, Any]:
    """Field map for a create or update request."""
    return {
        "id": record.id,
        "title": record.title,
        "content": record.content,
        "tags": json.dumps(record.tag_names, ensure_ascii=False),
        "isFavorite": FAVORITE_YES if record.is_favorite else FAVORITE_NO,
        "createdAt": to_millis(record.created_at),
        "updatedAt": to_millis(record.updated_at),
        "lastUsed": to_millis(record.effective_last_used),
    }


def text_value(value: Any) -> Optional[str]:
    """Flatten a Bitable text cell.

    Text cells come back either as plain strings or as a list of rich-text
    segments ``[{"type": "text", "text": "..."}]``.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = []
        for segment in value:
            if isinstance(segment, dict):
                parts.append(str(segment.get("text", "")))
            elif segment is not None:
                parts.append(str(segment))
        return "".join(parts)
    return str(value)


def _millis(value: Any) -> Optional[int]:
    """Millisecond epoch from a number or text cell; None if unusable.

    Values a datetime cannot hold (NaN, infinities, far-future typos) count
    as missing, so the row is skipped rather than failing the listing.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    else:
        text = text_value(value)
        if text is None:
            return None
        try:
            number = float(text.strip())
        except ValueError:
            return None
    # NaN fails both comparisons
    if not MIN_MILLIS <= number <= MAX_MILLIS:
        return None
    return int(number)


def decode_tags(value: Any) -> List[str]:
    """Tag names from the ``tags`` cell.

    The cell normally holds a JSON array; anything that does not parse as
    one falls back to comma splitting.
    """
    if value is None:
        return []
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        names = value
    else:
        text = text_value(value) or ""
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            names = [str(v) for v in parsed if v is not None]
        else:
            names = text.split(",")

    result = []
    for name in names:
        name = name.strip()
        if name and name not in result:
            result.append(name)
    return result


def decode_favorite(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return (text_value(value) or "").strip() in (FAVORITE_YES, "true", "1", "yes")


def decode_item(item: Dict[str, Any]) -> Optional[Record]:
    """Build a Record from one ``items[]`` entry of a list response.

    Returns None when the row lacks ``id``, ``createdAt`` or ``updatedAt``,
    or when a timestamp is outside the range a datetime can represent.
    """
    fields = item.get("fields") or {}
    record_id = (text_value(fields.get("id")) or "").strip()
    created = _millis(fields.get("createdAt"))
    updated = _millis(fields.get("updatedAt"))
    if not record_id or created is None or updated is None:
        logger.debug(f"Skipping remote row {item.get('record_id')}: missing id or timestamps")
        return None

    last_used = _millis(fields.get("lastUsed"))
    return Record(
        id=record_id,
        title=text_value(fields.get("title")) or UNTITLED,
        content=text_value(fields.get("content")) or "",
        created_at=from_millis(created),
        updated_at=from_millis(updated),
        tags=[Tag(name=name) for name in decode_tags(fields.get("tags"))],
        is_favorite=decode_favorite(fields.get("isFavorite")),
        last_used_at=from_millis(last_used) if last_used is not None else None,
        remote_ref=item.get("record_id"),
    )
