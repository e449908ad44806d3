"""Durable local record of bookmarks, read progress and sync metadata."""

import json
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path

from loguru import logger

from pocket_ding.core.database.schema import get_metadata, migrate_schema
from pocket_ding.errors import NotFound
from pocket_ding.models.bookmark import Bookmark, BookmarkFilter, ReadProgress, SyncCursor

_BOOKMARK_COLUMNS = (
    "id, url, title, description, tags, is_archived, unread, "
    "date_added, remote_updated_at, content_version"
)


class StoreEventKind(StrEnum):
    BOOKMARK_UPSERTED = "bookmark_upserted"
    BOOKMARK_DELETED = "bookmark_deleted"
    PROGRESS_UPDATED = "progress_updated"


@dataclass(frozen=True)
class StoreEvent:
    """Change notification delivered to observers after a commit."""

    kind: StoreEventKind
    bookmark_id: int


Observer = Callable[[StoreEvent], None]


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_bookmark(row: sqlite3.Row | tuple) -> Bookmark:
    return Bookmark(
        id=row[0],
        url=row[1],
        title=row[2],
        description=row[3],
        tags=tuple(json.loads(row[4])),
        is_archived=bool(row[5]),
        unread=bool(row[6]),
        date_added=_parse_ts(row[7]),
        remote_updated_at=datetime.fromisoformat(row[8]),
        content_version=row[9],
    )


def _row_to_progress(row: sqlite3.Row | tuple) -> ReadProgress:
    return ReadProgress(
        bookmark_id=row[0],
        scroll_percent=row[1],
        last_read_at=datetime.fromisoformat(row[2]),
        pending_push=bool(row[3]),
    )


def _matches(bookmark: Bookmark, flt: BookmarkFilter) -> bool:
    if flt.tags and not set(flt.tags).intersection(bookmark.tags):
        return False
    if flt.added_after or flt.added_before:
        if bookmark.date_added is None:
            return False
        if flt.added_after and bookmark.date_added < flt.added_after:
            return False
        if flt.added_before and bookmark.date_added > flt.added_before:
            return False
    return True


class LocalStore:
    """SQLite-backed bookmark and progress store.

    Every write is a single transaction, so readers never observe a partially
    updated record. Writers to the same bookmark are serialized through
    ``record_lock``; writers to different bookmarks do not contend beyond the
    short statement-level connection lock.

    Observers are called synchronously after each commit. Delivery is
    best-effort: a failing observer is logged and the rest still run.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._conn_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._record_locks: dict[int, threading.RLock] = {}
        self._observers: list[Observer] = []

    @classmethod
    def open(cls, db_path: Path) -> "LocalStore":
        """Open (creating or migrating) the store at ``db_path``."""
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        migrate_schema(conn)
        return cls(conn)

    def close(self) -> None:
        with self._conn_lock:
            self.conn.close()

    # --- Locking and observers ---

    @contextmanager
    def record_lock(self, bookmark_id: int) -> Iterator[None]:
        """Hold the write lock for one bookmark. Reentrant."""
        with self._locks_guard:
            lock = self._record_locks.setdefault(bookmark_id, threading.RLock())
        with lock:
            yield

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, kind: StoreEventKind, bookmark_id: int) -> None:
        event = StoreEvent(kind=kind, bookmark_id=bookmark_id)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("Store observer failed on {} for bookmark {}", kind, bookmark_id)

    # --- Bookmarks ---

    def get(self, bookmark_id: int) -> Bookmark | None:
        with self._conn_lock:
            row = self.conn.execute(
                f"SELECT {_BOOKMARK_COLUMNS} FROM bookmarks WHERE id = ?", (bookmark_id,)
            ).fetchone()
        return _row_to_bookmark(row) if row else None

    def require(self, bookmark_id: int) -> Bookmark:
        """Like ``get``, but raises NotFound for unknown ids."""
        bookmark = self.get(bookmark_id)
        if bookmark is None:
            msg = f"Bookmark {bookmark_id} not found"
            raise NotFound(msg)
        return bookmark

    def list_all(self, flt: BookmarkFilter | None = None) -> list[Bookmark]:
        """List bookmarks, newest first, optionally filtered."""
        flt = flt or BookmarkFilter()
        query = f"SELECT {_BOOKMARK_COLUMNS} FROM bookmarks"
        clauses: list[str] = []
        params: list[int] = []
        if flt.read_status != "all":
            clauses.append("unread = ?")
            params.append(1 if flt.read_status == "unread" else 0)
        if flt.archived_status != "all":
            clauses.append("is_archived = ?")
            params.append(1 if flt.archived_status == "archived" else 0)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY date_added DESC, id DESC"

        with self._conn_lock:
            rows = self.conn.execute(query, params).fetchall()
        return [b for b in map(_row_to_bookmark, rows) if _matches(b, flt)]

    def list_ids(self) -> set[int]:
        with self._conn_lock:
            return {row[0] for row in self.conn.execute("SELECT id FROM bookmarks")}

    def upsert(self, bookmark: Bookmark) -> Bookmark:
        """Insert or replace a bookmark record. Returns the committed record."""
        with self.record_lock(bookmark.id), self._conn_lock:
            try:
                self.conn.execute(
                    f"INSERT OR REPLACE INTO bookmarks ({_BOOKMARK_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        bookmark.id, bookmark.url, bookmark.title, bookmark.description,
                        json.dumps(list(bookmark.tags)), int(bookmark.is_archived),
                        int(bookmark.unread), _ts(bookmark.date_added),
                        bookmark.remote_updated_at.isoformat(), bookmark.content_version,
                    ),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        self._notify(StoreEventKind.BOOKMARK_UPSERTED, bookmark.id)
        return bookmark

    def delete(self, bookmark_id: int) -> None:
        """Delete a bookmark together with its read progress."""
        with self.record_lock(bookmark_id), self._conn_lock:
            try:
                self.conn.execute("DELETE FROM read_progress WHERE bookmark_id = ?", (bookmark_id,))
                self.conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        self._notify(StoreEventKind.BOOKMARK_DELETED, bookmark_id)

    # --- Read progress ---

    def get_progress(self, bookmark_id: int) -> ReadProgress | None:
        with self._conn_lock:
            row = self.conn.execute(
                "SELECT bookmark_id, scroll_percent, last_read_at, pending_push "
                "FROM read_progress WHERE bookmark_id = ?",
                (bookmark_id,),
            ).fetchone()
        return _row_to_progress(row) if row else None

    def set_progress(self, bookmark_id: int, progress: ReadProgress) -> None:
        if progress.bookmark_id != bookmark_id:
            msg = f"progress is for bookmark {progress.bookmark_id}, not {bookmark_id}"
            raise ValueError(msg)
        with self.record_lock(bookmark_id), self._conn_lock:
            try:
                self.conn.execute(
                    """INSERT OR REPLACE INTO read_progress
                       (bookmark_id, scroll_percent, last_read_at, pending_push)
                       VALUES (?, ?, ?, ?)""",
                    (
                        bookmark_id, progress.scroll_percent,
                        progress.last_read_at.isoformat(), int(progress.pending_push),
                    ),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        self._notify(StoreEventKind.PROGRESS_UPDATED, bookmark_id)

    def list_progress(self) -> list[ReadProgress]:
        with self._conn_lock:
            rows = self.conn.execute(
                "SELECT bookmark_id, scroll_percent, last_read_at, pending_push "
                "FROM read_progress ORDER BY bookmark_id"
            ).fetchall()
        return [_row_to_progress(r) for r in rows]

    def list_pending_progress(self) -> list[ReadProgress]:
        with self._conn_lock:
            rows = self.conn.execute(
                "SELECT bookmark_id, scroll_percent, last_read_at, pending_push "
                "FROM read_progress WHERE pending_push = 1 ORDER BY bookmark_id"
            ).fetchall()
        return [_row_to_progress(r) for r in rows]

    # --- Sync cursor ---

    def get_cursor(self) -> SyncCursor:
        """Read the persisted cursor. ``sync_in_flight`` is never persisted."""
        with self._conn_lock:
            token = get_metadata(self.conn, "sync_cursor_token")
            last_synced_at = get_metadata(self.conn, "last_synced_at")
        return SyncCursor(token=token, last_synced_at=_parse_ts(last_synced_at))

    def set_cursor(self, cursor: SyncCursor) -> None:
        """Persist token and last sync time in one transaction."""
        with self._conn_lock:
            try:
                for key, value in (
                    ("sync_cursor_token", cursor.token),
                    ("last_synced_at", _ts(cursor.last_synced_at)),
                ):
                    if value is None:
                        self.conn.execute("DELETE FROM metadata WHERE key = ?", (key,))
                    else:
                        self.conn.execute(
                            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                            (key, value),
                        )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
