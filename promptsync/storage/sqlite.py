"""SQLite storage backend for promptsync.

Local-first storage for prompts and their tags. Every operation opens its
own connection through ``_connect()``, which commits on success, rolls back
on exception and always closes. The reconciliation engine only uses
``list_all``, ``get_by_id`` and ``upsert_from_remote``; the rest is the
local editing surface used by the CLI.
"""

import contextlib
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from promptsync.config import get_db_path
from promptsync.types import (
    Record,
    RecordNotFoundError,
    Tag,
    ensure_utc,
    new_id,
    parse_datetime,
    truncate_millis,
    utc_now,
)
from promptsync.validation import sanitize_string

from .schema import init_db
from .tags import TagLike, TagResolver, is_tag_name_conflict

logger = logging.getLogger(__name__)

_PROMPT_COLUMNS = "id, title, content, is_favorite, created_at, updated_at, last_used_at"


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO form (millisecond precision) so stored values sort as text."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="milliseconds")


class LocalStore:
    """SQLite-backed record and tag store.

    Args:
        db_path: Database file. Defaults to ``promptsync.db`` under the
            promptsync home directory.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path).expanduser() if db_path else get_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.tags = TagResolver(self._connect)

        with self._connect() as conn:
            init_db(conn)

    def __repr__(self) -> str:
        return f"LocalStore({str(self.db_path)!r})"

    # === Connection management ===

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    # === Row mapping ===

    def _tags_for(self, conn: sqlite3.Connection, record_ids: List[str]) -> Dict[str, List[Tag]]:
        if not record_ids:
            return {}
        by_record: Dict[str, List[Tag]] = {rid: [] for rid in record_ids}
        # Chunked to stay under SQLite's host parameter limit
        for start in range(0, len(record_ids), 500):
            chunk = record_ids[start : start + 500]
            placeholders = ",".join("?" * len(chunk))
            rows = conn.execute(
                f"""SELECT pt.prompt_id, t.id, t.name, t.color
                    FROM prompt_tags pt JOIN tags t ON t.id = pt.tag_id
                    WHERE pt.prompt_id IN ({placeholders})
                    ORDER BY t.name""",
                chunk,
            ).fetchall()
            for row in rows:
                by_record[row["prompt_id"]].append(Tag(id=row["id"], name=row["name"], color=row["color"]))
        return by_record

    def _row_to_record(self, row: sqlite3.Row, tags: List[Tag]) -> Record:
        return Record(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            created_at=parse_datetime(row["created_at"], strict=True),
            updated_at=parse_datetime(row["updated_at"], strict=True),
            tags=tags,
            is_favorite=bool(row["is_favorite"]),
            last_used_at=parse_datetime(row["last_used_at"]),
        )

    def _rows_to_records(self, conn: sqlite3.Connection, rows: List[sqlite3.Row]) -> List[Record]:
        tags = self._tags_for(conn, [row["id"] for row in rows])
        return [self._row_to_record(row, tags.get(row["id"], [])) for row in rows]

    def _load(self, conn: sqlite3.Connection, record_id: str) -> Optional[Record]:
        row = conn.execute(f"SELECT {_PROMPT_COLUMNS} FROM prompts WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_record(row, self._tags_for(conn, [record_id])[record_id])

    def _replace_tags(self, conn: sqlite3.Connection, record_id: str, tags: List[Tag]) -> None:
        conn.execute("DELETE FROM prompt_tags WHERE prompt_id = ?", (record_id,))
        conn.executemany(
            "INSERT OR IGNORE INTO prompt_tags (prompt_id, tag_id) VALUES (?, ?)",
            [(record_id, tag.id) for tag in tags],
        )

    # === Reconciliation contract ===

    def list_all(self) -> List[Record]:
        """Snapshot of every record, read in a single transaction."""
        with self._connect() as conn:
            conn.execute("BEGIN")
            rows = conn.execute(f"SELECT {_PROMPT_COLUMNS} FROM prompts ORDER BY updated_at DESC").fetchall()
            return self._rows_to_records(conn, rows)

    def get_by_id(self, record_id: str) -> Optional[Record]:
        with self._connect() as conn:
            return self._load(conn, record_id)

    def upsert_from_remote(self, record: Record, tag_names: Iterable[str]) -> Record:
        """Write a remote-origin record, remote values winning wholesale.

        Tags are resolved first (each in its own short transaction). The row
        upsert and the replacement of its tag associations then happen in one
        transaction, so readers never observe a half-updated tag set. An
        existing ``created_at`` is preserved, and an existing ``last_used_at``
        is kept when the remote copy has none.
        """
        tags = self.tags.resolve(tag_names)
        with self._connect() as conn:
            conn.execute(
                f"""INSERT INTO prompts ({_PROMPT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        content = excluded.content,
                        is_favorite = excluded.is_favorite,
                        updated_at = excluded.updated_at,
                        last_used_at = COALESCE(excluded.last_used_at, prompts.last_used_at)""",
                (
                    record.id,
                    record.title,
                    record.content,
                    int(record.is_favorite),
                    format_timestamp(truncate_millis(record.created_at)),
                    format_timestamp(truncate_millis(record.updated_at)),
                    format_timestamp(truncate_millis(record.last_used_at)) if record.last_used_at else None,
                ),
            )
            self._replace_tags(conn, record.id, tags)
            return self._load(conn, record.id)

    # === Local editing ===

    def create_record(
        self,
        title: str,
        content: str,
        tags: Optional[Iterable[TagLike]] = None,
        is_favorite: bool = False,
    ) -> Record:
        """Create a new record with a fresh time-ordered id."""
        title = sanitize_string(title, "title", max_length=1000)
        content = sanitize_string(content, "content")
        resolved = self.tags.resolve(tags or [])
        now = format_timestamp(utc_now())
        record_id = new_id()

        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO prompts ({_PROMPT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, NULL)",
                (record_id, title, content, int(is_favorite), now, now),
            )
            self._replace_tags(conn, record_id, resolved)
            return self._load(conn, record_id)

    def update_record(
        self,
        record_id: str,
        title: str,
        content: str,
        tags: Optional[Iterable[TagLike]] = None,
    ) -> Record:
        """Replace title, content and tags of an existing record.

        Raises:
            RecordNotFoundError: If the id does not exist.
            ValueError: If title or content is empty.
        """
        title = sanitize_string(title, "title", max_length=1000)
        content = sanitize_string(content, "content")
        if self.get_by_id(record_id) is None:
            raise RecordNotFoundError(record_id)
        resolved = self.tags.resolve(tags or [])

        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE prompts SET title = ?, content = ?, updated_at = ? WHERE id = ?",
                (title, content, format_timestamp(utc_now()), record_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(record_id)
            self._replace_tags(conn, record_id, resolved)
            return self._load(conn, record_id)

    def delete_record(self, record_id: str) -> bool:
        """Delete a record locally. Not propagated by sync."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM prompts WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def toggle_favorite(self, record_id: str) -> Record:
        # Favorite is a content mutation: bump updated_at so the flag syncs
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE prompts SET is_favorite = 1 - is_favorite, updated_at = ? WHERE id = ?",
                (format_timestamp(utc_now()), record_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(record_id)
            return self._load(conn, record_id)

    def mark_used(self, record_id: str) -> Record:
        """Record a use. Only ``last_used_at`` changes."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE prompts SET last_used_at = ? WHERE id = ?",
                (format_timestamp(utc_now()), record_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(record_id)
            return self._load(conn, record_id)

    def recently_used(self, limit: int = 5) -> List[Record]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT {_PROMPT_COLUMNS} FROM prompts
                    WHERE last_used_at IS NOT NULL
                    ORDER BY last_used_at DESC LIMIT ?""",
                (limit,),
            ).fetchall()
            return self._rows_to_records(conn, rows)

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM prompts").fetchone()[0]

    # === Tags ===

    def list_tags(self) -> List[Tuple[Tag, int]]:
        """All tags with the number of records using each, by name."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT t.id, t.name, t.color, COUNT(pt.prompt_id) AS usage
                   FROM tags t LEFT JOIN prompt_tags pt ON pt.tag_id = t.id
                   GROUP BY t.id ORDER BY t.name"""
            ).fetchall()
        return [(Tag(id=row["id"], name=row["name"], color=row["color"]), row["usage"]) for row in rows]

    def update_tag(self, tag_id: str, name: str, color: Optional[str] = None) -> Tag:
        """Rename or recolor a tag.

        Raises:
            ValueError: If another tag already uses ``name``.
            KeyError: If the tag does not exist.
        """
        name = sanitize_string(name, "tag name", max_length=100).strip()
        current = self.tags.get_by_id(tag_id)
        if current is None:
            raise KeyError(f"Tag not found: {tag_id}")
        color = color or current.color
        try:
            with self._connect() as conn:
                conn.execute("UPDATE tags SET name = ?, color = ? WHERE id = ?", (name, color, tag_id))
        except sqlite3.IntegrityError as e:
            if is_tag_name_conflict(e):
                raise ValueError(f"Tag name already in use: {name}") from e
            raise
        # Tag names travel inside records, so renamed tags must re-sync
        with self._connect() as conn:
            conn.execute(
                """UPDATE prompts SET updated_at = ?
                   WHERE id IN (SELECT prompt_id FROM prompt_tags WHERE tag_id = ?)""",
                (format_timestamp(utc_now()), tag_id),
            )
        return Tag(id=tag_id, name=name, color=color)

    def delete_tag(self, tag_id: str) -> bool:
        with self._connect() as conn:
            conn.execute(
                """UPDATE prompts SET updated_at = ?
                   WHERE id IN (SELECT prompt_id FROM prompt_tags WHERE tag_id = ?)""",
                (format_timestamp(utc_now()), tag_id),
            )
            cursor = conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
            return cursor.rowcount > 0

