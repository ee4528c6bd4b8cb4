"""Database schema for promptsync SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Database initialization (init_db)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2  # v2: prompts.last_used_at

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Prompts (the synchronized records)
CREATE TABLE IF NOT EXISTS prompts (
    id TEXT PRIMARY KEY,           -- UUIDv7, shared with the remote table
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    is_favorite INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,      -- bumped on every local mutation
    last_used_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_prompts_updated ON prompts(updated_at);

-- Tags: name is the natural key, the constraint arbitrates concurrent creation
CREATE TABLE IF NOT EXISTS tags (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    color TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS prompt_tags (
    prompt_id TEXT NOT NULL REFERENCES prompts(id) ON DELETE CASCADE,
    tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (prompt_id, tag_id)
);
CREATE INDEX IF NOT EXISTS idx_prompt_tags_tag ON prompt_tags(tag_id);
"""


def _current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Bring databases created by older releases up to SCHEMA_VERSION."""
    if 0 < from_version < 2:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(prompts)")}
        if "last_used_at" not in columns:
            logger.info("Migrating schema: adding prompts.last_used_at")
            conn.execute("ALTER TABLE prompts ADD COLUMN last_used_at TEXT")


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and run migrations. Idempotent."""
    conn.executescript(SCHEMA)
    version = _current_version(conn)
    if version < SCHEMA_VERSION:
        _migrate(conn, version)
        conn.execute("INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.debug(f"Schema at version {SCHEMA_VERSION} (was {version})")
    # Needs the v2 column, so created after migrations
    conn.execute("CREATE INDEX IF NOT EXISTS idx_prompts_last_used ON prompts(last_used_at)")
