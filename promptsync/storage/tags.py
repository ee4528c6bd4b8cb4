"""Tag identity resolution for promptsync storage.

TagResolver turns caller-supplied tags (free-form names, optionally with a
known id) into rows that exist in the ``tags`` table. Two writers racing to
create the same name are arbitrated by the ``UNIQUE(name)`` constraint: the
loser catches the IntegrityError and re-reads the winner's row. There is no
resolver-side locking. Receives the connection factory explicitly to avoid
circular imports with the store.
"""

import logging
import sqlite3
from typing import Callable, Iterable, List, Optional, Union

from promptsync.types import DEFAULT_TAG_COLOR, Tag, new_id

logger = logging.getLogger(__name__)

TagLike = Union[Tag, str]


def _row_to_tag(row: sqlite3.Row) -> Tag:
    return Tag(id=row["id"], name=row["name"], color=row["color"])


def is_tag_name_conflict(exc: sqlite3.IntegrityError) -> bool:
    """True when the error is the tags.name uniqueness violation."""
    return "UNIQUE constraint failed: tags.name" in str(exc)


class TagResolver:
    """Find-or-create tags by identity or by name.

    Args:
        connect_fn: Callable returning a DB connection context manager that
            commits on success.
    """

    def __init__(self, connect_fn: Callable):
        self._connect = connect_fn

    def get_by_id(self, tag_id: str) -> Optional[Tag]:
        with self._connect() as conn:
            row = conn.execute("SELECT id, name, color FROM tags WHERE id = ?", (tag_id,)).fetchone()
        return _row_to_tag(row) if row else None

    def get_by_name(self, name: str) -> Optional[Tag]:
        with self._connect() as conn:
            row = conn.execute("SELECT id, name, color FROM tags WHERE name = ?", (name,)).fetchone()
        return _row_to_tag(row) if row else None

    def resolve(self, requested: Iterable[TagLike]) -> List[Tag]:
        """Resolve each requested tag to a stored row.

        Returns one tag per distinct input, in first-seen order. Inputs that
        collapse to the same stored tag (same id, or same name) appear once.
        Blank names are skipped. A tag whose creation fails for any reason
        other than a lost race is logged and dropped; the others still
        resolve.
        """
        resolved: List[Tag] = []
        seen_ids = set()

        for item in requested:
            wanted = Tag(name=item) if isinstance(item, str) else item
            name = (wanted.name or "").strip()

            tag = None
            if wanted.id:
                tag = self.get_by_id(wanted.id)
            if tag is None:
                if not name:
                    continue
                tag = self.get_by_name(name)
            if tag is None:
                tag = self._create(name, wanted.color or DEFAULT_TAG_COLOR)
            if tag is None or tag.id in seen_ids:
                continue

            seen_ids.add(tag.id)
            resolved.append(tag)

        return resolved

    def _create(self, name: str, color: str) -> Optional[Tag]:
        tag = Tag(id=new_id(), name=name, color=color)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO tags (id, name, color) VALUES (?, ?, ?)",
                    (tag.id, tag.name, tag.color),
                )
            return tag
        except sqlite3.IntegrityError as e:
            if not is_tag_name_conflict(e):
                logger.warning(
                    f"Failed to create tag {name!r}: {e}",
                    extra={"tag_name": name, "error_type": type(e).__name__},
                )
                return None
            winner = self.get_by_name(name)
            if winner is None:
                logger.warning(f"Tag {name!r} reported as duplicate but not found on re-read")
                return None
            logger.info(f"Tag {name!r} was created concurrently; using existing {winner.id}")
            return winner
        except sqlite3.Error as e:
            logger.warning(
                f"Failed to create tag {name!r}: {e}",
                extra={"tag_name": name, "error_type": type(e).__name__},
            )
            return None
