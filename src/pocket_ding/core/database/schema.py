"""SQLite schema creation and migration for the local store and the content cache."""

import sqlite3

SCHEMA_VERSION = 2

_STORE_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS bookmarks (
    id INTEGER PRIMARY KEY,
    url TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',
    is_archived INTEGER NOT NULL DEFAULT 0,
    unread INTEGER NOT NULL DEFAULT 1,
    date_added TEXT,
    remote_updated_at TEXT NOT NULL,
    content_version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_bookmarks_archived ON bookmarks(is_archived);
CREATE INDEX IF NOT EXISTS idx_bookmarks_added ON bookmarks(date_added DESC);

CREATE TABLE IF NOT EXISTS read_progress (
    bookmark_id INTEGER PRIMARY KEY,
    scroll_percent REAL NOT NULL,
    last_read_at TEXT NOT NULL,
    pending_push INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_progress_pending ON read_progress(pending_push);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Version 1 stored read progress without a push flag.
_MIGRATE_1_TO_2_SQL = """\
ALTER TABLE read_progress ADD COLUMN pending_push INTEGER NOT NULL DEFAULT 0;
CREATE INDEX IF NOT EXISTS idx_progress_pending ON read_progress(pending_push);
"""

_CACHE_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS cache_entries (
    bookmark_id INTEGER NOT NULL,
    content_version INTEGER NOT NULL,
    path TEXT NOT NULL,
    content_type TEXT NOT NULL,
    sha256 TEXT NOT NULL,
    size INTEGER NOT NULL,
    cached_at TEXT NOT NULL,
    is_current INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (bookmark_id, content_version)
);

CREATE INDEX IF NOT EXISTS idx_cache_current ON cache_entries(bookmark_id, is_current);
"""


def create_schema(conn: sqlite3.Connection) -> None:
    """Create all local store tables and indexes."""
    conn.executescript(_STORE_SCHEMA_SQL)
    conn.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
        ("schema_version", str(SCHEMA_VERSION)),
    )
    conn.commit()


def create_cache_schema(conn: sqlite3.Connection) -> None:
    """Create the content cache index table."""
    conn.executescript(_CACHE_SCHEMA_SQL)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """Return the current schema version, or None if metadata table doesn't exist."""
    try:
        row = conn.execute(
            "SELECT value FROM metadata WHERE key = 'schema_version'"
        ).fetchone()
    except sqlite3.OperationalError:
        return None
    return int(row[0]) if row else None


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Create or migrate the database schema to the latest version."""
    version = get_schema_version(conn)
    if version is None:
        create_schema(conn)
        return
    if version < 2:
        conn.executescript(_MIGRATE_1_TO_2_SQL)
    if version < SCHEMA_VERSION:
        set_metadata(conn, "schema_version", str(SCHEMA_VERSION))


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    """Read a metadata value, or None when unset."""
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row[0] if row else None


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Write a metadata value and commit."""
    conn.execute("INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value))
    conn.commit()


def delete_metadata(conn: sqlite3.Connection, key: str) -> None:
    """Remove a metadata value and commit."""
    conn.execute("DELETE FROM metadata WHERE key = ?", (key,))
    conn.commit()
