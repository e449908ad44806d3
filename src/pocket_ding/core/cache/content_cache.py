"""Versioned on-disk cache of article content for offline reading."""

import hashlib
import os
import sqlite3
import threading
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from pocket_ding.config import CACHE_RETENTION
from pocket_ding.core.database.schema import create_cache_schema
from pocket_ding.errors import CacheWriteIncomplete
from pocket_ding.models.bookmark import CacheEntry, ContentBlob

_ENTRY_COLUMNS = (
    "bookmark_id, content_version, path, content_type, sha256, size, cached_at, is_current"
)


def _row_to_entry(row: sqlite3.Row | tuple) -> CacheEntry:
    return CacheEntry(
        bookmark_id=row[0],
        content_version=row[1],
        path=row[2],
        content_type=row[3],
        sha256=row[4],
        size=row[5],
        cached_at=datetime.fromisoformat(row[6]),
        is_current=bool(row[7]),
    )


class ContentCache:
    """Cache entries keyed by ``(bookmark_id, content_version)``.

    Blobs live under ``<cache_dir>/blobs/<bookmark_id>/<version>.bin`` and are
    indexed in ``<cache_dir>/cache.db``, separate from bookmark metadata, so the
    whole cache can be dropped without touching the local store.

    A write goes through three ordered steps: the blob is written and verified
    (``stage``), the entry is made current (``promote``), and only later are
    older entries removed (``evict_stale``). A crash between any two steps
    leaves the previous current entry readable.
    """

    def __init__(self, cache_dir: Path, *, retention: int = CACHE_RETENTION) -> None:
        self.cache_dir = cache_dir.resolve()
        self.blob_dir = self.cache_dir / "blobs"
        self.blob_dir.mkdir(parents=True, exist_ok=True)
        self.retention = retention
        self.conn = sqlite3.connect(str(self.cache_dir / "cache.db"), check_same_thread=False)
        create_cache_schema(self.conn)
        self._lock = threading.RLock()
        self._pins: Counter[int] = Counter()
        logger.debug("Content cache ready at {}, retention {}", self.cache_dir, retention)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _blob_path(self, bookmark_id: int, content_version: int) -> Path:
        path = (self.blob_dir / str(bookmark_id) / f"{content_version}.bin").resolve()
        if not str(path).startswith(str(self.blob_dir) + "/"):
            msg = f"Path escapes cache dir: {path!r}"
            raise ValueError(msg)
        return path

    # --- Reads ---

    def get_current(self, bookmark_id: int) -> CacheEntry | None:
        """Return the current entry for a bookmark, or None if nothing usable is cached.

        Never touches the network. A row whose blob has gone missing is
        treated as absent.
        """
        with self._lock:
            row = self.conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM cache_entries "
                "WHERE bookmark_id = ? AND is_current = 1 "
                "ORDER BY content_version DESC LIMIT 1",
                (bookmark_id,),
            ).fetchone()
        if row is None:
            return None
        entry = _row_to_entry(row)
        if not Path(entry.path).is_file():
            logger.warning(
                "Cached blob missing for bookmark {} v{}: {}",
                bookmark_id, entry.content_version, entry.path,
            )
            return None
        return entry

    def list_entries(self, bookmark_id: int) -> list[CacheEntry]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM cache_entries WHERE bookmark_id = ? "
                "ORDER BY content_version DESC",
                (bookmark_id,),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def read(self, entry: CacheEntry) -> bytes:
        return Path(entry.path).read_bytes()

    @contextmanager
    def reading(self, bookmark_id: int) -> Iterator[CacheEntry | None]:
        """Pin a bookmark's entries for the duration of a read.

        Eviction skips pinned bookmarks.
        """
        with self._lock:
            self._pins[bookmark_id] += 1
        try:
            yield self.get_current(bookmark_id)
        finally:
            with self._lock:
                self._pins[bookmark_id] -= 1
                if self._pins[bookmark_id] <= 0:
                    del self._pins[bookmark_id]

    def is_pinned(self, bookmark_id: int) -> bool:
        with self._lock:
            return self._pins[bookmark_id] > 0

    # --- Writes ---

    def stage(self, bookmark_id: int, content_version: int, blob: ContentBlob) -> CacheEntry:
        """Write and verify a blob, recording it as a non-current entry.

        Raises:
            CacheWriteIncomplete: If the write fails or the read-back does not
                match. The temporary file is removed and existing entries are
                left as they were.
        """
        final_path = self._blob_path(bookmark_id, content_version)
        tmp_path = final_path.with_suffix(".bin.tmp")
        expected = hashlib.sha256(blob.data).hexdigest()

        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(blob.data)
                f.flush()
                os.fsync(f.fileno())
            actual = hashlib.sha256(tmp_path.read_bytes()).hexdigest()
            if actual != expected:
                msg = (
                    f"Verification failed for bookmark {bookmark_id} v{content_version}: "
                    f"expected {expected}, got {actual}"
                )
                raise CacheWriteIncomplete(msg)
            os.replace(tmp_path, final_path)
        except CacheWriteIncomplete:
            tmp_path.unlink(missing_ok=True)
            raise
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            msg = f"Could not write cache for bookmark {bookmark_id} v{content_version}: {e}"
            raise CacheWriteIncomplete(msg) from e

        entry = CacheEntry(
            bookmark_id=bookmark_id,
            content_version=content_version,
            path=str(final_path),
            content_type=blob.content_type,
            sha256=expected,
            size=len(blob.data),
            cached_at=datetime.now(UTC),
            is_current=False,
        )
        with self._lock:
            try:
                self.conn.execute(
                    f"INSERT INTO cache_entries ({_ENTRY_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT (bookmark_id, content_version) DO UPDATE SET "
                    "path = excluded.path, content_type = excluded.content_type, "
                    "sha256 = excluded.sha256, size = excluded.size, "
                    "cached_at = excluded.cached_at",
                    (
                        entry.bookmark_id, entry.content_version, entry.path,
                        entry.content_type, entry.sha256, entry.size,
                        entry.cached_at.isoformat(), 0,
                    ),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        logger.debug("Staged bookmark {} v{} ({} bytes)", bookmark_id, content_version, entry.size)
        return entry

    def promote(self, entry: CacheEntry) -> CacheEntry:
        """Make a staged entry current. Older entries become stale, not deleted.

        An entry older than the existing current one is left stale.
        """
        with self._lock:
            current = self.get_current(entry.bookmark_id)
            if current is not None and current.content_version > entry.content_version:
                logger.debug(
                    "Not promoting bookmark {} v{}: v{} is already current",
                    entry.bookmark_id, entry.content_version, current.content_version,
                )
                return entry
            try:
                self.conn.execute(
                    "UPDATE cache_entries SET is_current = 0 WHERE bookmark_id = ?",
                    (entry.bookmark_id,),
                )
                self.conn.execute(
                    "UPDATE cache_entries SET is_current = 1 "
                    "WHERE bookmark_id = ? AND content_version = ?",
                    (entry.bookmark_id, entry.content_version),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        return replace(entry, is_current=True)

    def put(self, bookmark_id: int, content_version: int, blob: ContentBlob) -> CacheEntry:
        """Stage, verify and promote new content for a bookmark."""
        return self.promote(self.stage(bookmark_id, content_version, blob))

    # --- Removal ---

    def _delete_entry(self, entry: CacheEntry) -> None:
        Path(entry.path).unlink(missing_ok=True)
        self.conn.execute(
            "DELETE FROM cache_entries WHERE bookmark_id = ? AND content_version = ?",
            (entry.bookmark_id, entry.content_version),
        )

    def evict_stale(self, bookmark_id: int) -> int:
        """Remove entries older than the current one beyond ``retention``.

        Does nothing while the bookmark is pinned by a reader, or when no
        current entry exists. Returns the number of entries removed.
        """
        with self._lock:
            if self.is_pinned(bookmark_id):
                logger.debug("Skipping eviction for bookmark {}: being read", bookmark_id)
                return 0
            current = self.get_current(bookmark_id)
            if current is None:
                return 0
            stale = [
                e
                for e in self.list_entries(bookmark_id)
                if not e.is_current and e.content_version < current.content_version
            ]
            to_remove = stale[self.retention :]
            try:
                for entry in to_remove:
                    self._delete_entry(entry)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        if to_remove:
            logger.debug("Evicted {} stale entries for bookmark {}", len(to_remove), bookmark_id)
        return len(to_remove)

    def remove_bookmark(self, bookmark_id: int) -> bool:
        """Drop every entry of a bookmark. Returns False if deferred by an active read."""
        with self._lock:
            if self.is_pinned(bookmark_id):
                logger.debug("Deferring cache removal for bookmark {}: being read", bookmark_id)
                return False
            try:
                for entry in self.list_entries(bookmark_id):
                    self._delete_entry(entry)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        bookmark_dir = self.blob_dir / str(bookmark_id)
        if bookmark_dir.is_dir() and not any(bookmark_dir.iterdir()):
            bookmark_dir.rmdir()
        return True

    def cached_bookmark_ids(self) -> set[int]:
        with self._lock:
            return {row[0] for row in self.conn.execute("SELECT DISTINCT bookmark_id FROM cache_entries")}

    def collect_garbage(self) -> int:
        """Run ``evict_stale`` over every bookmark with stale entries."""
        with self._lock:
            ids = [
                row[0]
                for row in self.conn.execute(
                    "SELECT DISTINCT bookmark_id FROM cache_entries WHERE is_current = 0"
                )
            ]
        return sum(self.evict_stale(bookmark_id) for bookmark_id in ids)

    def recover(self) -> int:
        """Clean up after an interrupted write.

        Removes leftover temporary files, index rows whose blob is missing, and
        blobs that no index row refers to. Returns the number of items removed.
        """
        removed = 0
        with self._lock:
            known: set[str] = set()
            rows = self.conn.execute(f"SELECT {_ENTRY_COLUMNS} FROM cache_entries").fetchall()
            try:
                for entry in map(_row_to_entry, rows):
                    if Path(entry.path).is_file():
                        known.add(entry.path)
                    else:
                        self._delete_entry(entry)
                        removed += 1
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

            for path in sorted(self.blob_dir.rglob("*")):
                if path.is_file() and str(path) not in known:
                    logger.debug("Removing orphaned cache file {}", path)
                    path.unlink()
                    removed += 1

        if removed:
            logger.info("Cache recovery removed {} item(s)", removed)
        return removed
