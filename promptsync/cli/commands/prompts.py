"""Local prompt commands (list, add, tags, use, favorite)."""

import json
import logging
from typing import TYPE_CHECKING, Any, Dict

from promptsync.types import Record
from promptsync.validation import sanitize_tag_names

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    import argparse

    from promptsync.storage.sqlite import LocalStore


def _record_to_dict(record: Record) -> Dict[str, Any]:
    return {
        "id": record.id,
        "title": record.title,
        "content": record.content,
        "tags": record.tag_names,
        "is_favorite": record.is_favorite,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
        "last_used_at": record.last_used_at.isoformat() if record.last_used_at else None,
    }


def _format_line(record: Record) -> str:
    star = "★" if record.is_favorite else " "
    tags = f"  [{', '.join(record.tag_names)}]" if record.tags else ""
    return f"{star} {record.id[:8]}  {record.title}{tags}"


def cmd_list(args: "argparse.Namespace", store: "LocalStore") -> int:
    records = store.recently_used(args.limit) if args.recent else store.list_all()
    if args.json:
        print(json.dumps([_record_to_dict(r) for r in records], indent=2, ensure_ascii=False))
        return 0
    if not records:
        print("No prompts yet.")
        return 0
    for record in records:
        print(_format_line(record))
    print(f"\n{len(records)} of {store.count()} prompts")
    return 0


def cmd_add(args: "argparse.Namespace", store: "LocalStore") -> int:
    record = store.create_record(args.title, args.content, sanitize_tag_names(args.tag), is_favorite=args.favorite)
    print(f"✓ Added {record.id}")
    return 0


def cmd_tags(args: "argparse.Namespace", store: "LocalStore") -> int:
    tags = store.list_tags()
    if not tags:
        print("No tags yet.")
        return 0
    for tag, usage in tags:
        print(f"  {tag.name}  ({usage})")
    return 0


def _resolve_id(store: "LocalStore", prefix: str) -> str:
    """Accept a full id or the unique 8+ character prefix shown by `list`."""
    if store.get_by_id(prefix) is not None:
        return prefix
    matches = [r.id for r in store.list_all() if r.id.startswith(prefix)]
    if len(prefix) >= 8 and len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise ValueError(f"Ambiguous id prefix: {prefix}")
    return prefix


def cmd_use(args: "argparse.Namespace", store: "LocalStore") -> int:
    record = store.mark_used(_resolve_id(store, args.id))
    print(record.content)
    return 0


def cmd_favorite(args: "argparse.Namespace", store: "LocalStore") -> int:
    record = store.toggle_favorite(_resolve_id(store, args.id))
    state = "added to" if record.is_favorite else "removed from"
    print(f"✓ {record.title} {state} favorites")
    return 0
