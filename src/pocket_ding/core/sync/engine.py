"""Sync cycle orchestration: pull, diff, cache, push, commit."""

import math
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum

from loguru import logger

from pocket_ding.config import CONTENT_FETCH_WORKERS
from pocket_ding.core.cache.content_cache import ContentCache
from pocket_ding.core.store.local_store import LocalStore
from pocket_ding.core.sync.backoff import Backoff
from pocket_ding.core.sync.diff import diff_bookmark, resolve_progress_conflict
from pocket_ding.errors import (
    AuthError,
    ConflictError,
    NetworkError,
    NotFound,
    RateLimited,
    RequestRejected,
)
from pocket_ding.models.bookmark import (
    Bookmark,
    PushStatus,
    ReadProgress,
    RemoteBookmark,
    SyncCursor,
    SyncResult,
)
from pocket_ding.protocols import RemoteProtocol

CYCLE_KEY = "cycle"


class SyncState(StrEnum):
    IDLE = "idle"
    PULLING = "pulling"
    DIFFING = "diffing"
    CACHING = "caching"
    PUSHING = "pushing"
    COMMITTING = "committing"
    FAILED = "failed"


StateListener = Callable[[SyncState, str | None], None]


class _Cancelled(Exception):
    pass


@dataclass
class _CycleStats:
    pulled: int = 0
    updated: int = 0
    deleted: int = 0
    cached: int = 0
    pushed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def mutated(self) -> bool:
        return bool(self.updated or self.deleted or self.cached or self.pushed)

    def result(self, *, success: bool, reason: str | None = None) -> SyncResult:
        return SyncResult(
            success=success,
            reason=reason,
            pulled=self.pulled,
            updated=self.updated,
            deleted=self.deleted,
            cached=self.cached,
            pushed=self.pushed,
            errors=tuple(self.errors),
        )


def _content_key(bookmark_id: int) -> str:
    return f"content:{bookmark_id}"


def _push_key(bookmark_id: int) -> str:
    return f"push:{bookmark_id}"


def queue_progress(store: LocalStore, bookmark_id: int, progress: ReadProgress) -> ReadProgress:
    """Write local read progress flagged for push.

    Raises:
        NotFound: If the bookmark is not in the local store.
    """
    store.require(bookmark_id)
    if not progress.pending_push:
        progress = replace(progress, pending_push=True)
    store.set_progress(bookmark_id, progress)
    logger.debug("Queued progress {:.1f}% for bookmark {}", progress.scroll_percent, bookmark_id)
    return progress


class SyncEngine:
    """Reconcile the local store and content cache with the remote service.

    One cycle runs at a time. A sync requested while another is running
    waits for it and returns its result marked ``coalesced``. Errors never
    escape a cycle: they end it in ``failed`` with a reason code, after
    which the engine is ``idle`` again.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteProtocol,
        cache: ContentCache,
        *,
        backoff: Backoff | None = None,
        fetch_workers: int = CONTENT_FETCH_WORKERS,
        on_session_invalid: Callable[[AuthError], None] | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.remote = remote
        self.cache = cache
        self.backoff = backoff or Backoff()
        self.fetch_workers = fetch_workers
        self.on_session_invalid = on_session_invalid
        self._clock = clock

        self._lock = threading.Lock()
        self._inflight: Future[SyncResult] | None = None
        self._cancel = threading.Event()
        self._state = SyncState.IDLE
        self._listeners: list[StateListener] = []
        self.session_invalid = False
        # Last successful cycle, including no-op cycles that persist nothing.
        self.last_completed_at: datetime | None = None
        # Bookmark id -> content version the server has no snapshot for.
        self._no_content: dict[int, int] = {}

    # --- State ---

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._inflight is not None

    @property
    def cursor(self) -> SyncCursor:
        return replace(self.store.get_cursor(), sync_in_flight=self.in_flight)

    def subscribe_state(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: SyncState, reason: str | None = None) -> None:
        self._state = state
        logger.debug("Sync state: {}{}", state, f" ({reason})" if reason else "")
        for listener in list(self._listeners):
            try:
                listener(state, reason)
            except Exception:
                logger.exception("Sync state listener failed on {}", state)

    # --- Public operations ---

    def run_full_sync(self) -> SyncResult:
        """Pull everything, and delete local bookmarks the server no longer has."""
        return self._run(full=True)

    def run_incremental_sync(self) -> SyncResult:
        """Pull only what changed since the stored cursor."""
        return self._run(full=False)

    def enqueue_local_change(self, bookmark_id: int, progress: ReadProgress) -> None:
        """Record local read progress and queue it for the next push.

        Raises:
            NotFound: If the bookmark is not in the local store.
        """
        queue_progress(self.store, bookmark_id, progress)

    def cancel(self) -> bool:
        """Ask the running cycle to stop at its next checkpoint.

        Returns False when no cycle is running.
        """
        if not self.in_flight:
            return False
        logger.info("Cancelling sync")
        self._cancel.set()
        return True

    def reauthenticate(self, remote: RemoteProtocol | None = None) -> None:
        """Clear the invalid-session flag, optionally swapping in a new client."""
        if remote is not None:
            self.remote = remote
        self.session_invalid = False
        self.backoff.success(CYCLE_KEY)
        logger.info("Session re-authenticated")

    def cycle_ready(self) -> bool:
        """True when no cycle-level backoff is pending."""
        return self.backoff.ready(CYCLE_KEY)

    # --- Cycle ---

    def _run(self, *, full: bool) -> SyncResult:
        with self._lock:
            joined = self._inflight
            if joined is None:
                if self.session_invalid:
                    logger.warning("Session is invalid; sync skipped until re-authenticated")
                    return SyncResult(success=False, reason="auth")
                owner: Future[SyncResult] = Future()
                self._inflight = owner
                self._cancel.clear()

        if joined is not None:
            logger.debug("Sync already running, waiting for it")
            return replace(joined.result(), coalesced=True)

        result = SyncResult(success=False, reason="error")
        try:
            result = self._cycle(full=full)
        finally:
            with self._lock:
                self._inflight = None
            owner.set_result(result)
        return result

    def _checkpoint(self) -> None:
        if self._cancel.is_set():
            raise _Cancelled

    def _cycle(self, *, full: bool) -> SyncResult:
        stats = _CycleStats()
        cursor = self.store.get_cursor()
        logger.info("Starting {} sync", "full" if full else "incremental")
        try:
            self._set_state(SyncState.PULLING)
            remote_bookmarks, token = self.remote.list_changed_since(None if full else cursor.token)
            stats.pulled = len(remote_bookmarks)
            self._checkpoint()

            self._set_state(SyncState.DIFFING)
            self._diff(remote_bookmarks, stats)
            if full:
                self._delete_orphans({b.id for b in remote_bookmarks}, stats)
            self._checkpoint()

            self._set_state(SyncState.CACHING)
            self._cache_content(stats)
            self._checkpoint()

            self._set_state(SyncState.PUSHING)
            self._push_pending(stats)
            self._checkpoint()

            self._set_state(SyncState.COMMITTING)
            self._commit(cursor, token, stats)
        except AuthError as e:
            logger.error("Authentication failed: {}", e)
            self.session_invalid = True
            result = self._fail(stats, "auth", e)
            if self.on_session_invalid is not None:
                self.on_session_invalid(e)
            return result
        except RateLimited as e:
            self.backoff.failure(CYCLE_KEY, e.retry_after)
            return self._fail(stats, "rate_limited", e)
        except NetworkError as e:
            self.backoff.failure(CYCLE_KEY)
            return self._fail(stats, "network", e)
        except _Cancelled:
            return self._fail(stats, "cancelled")
        except Exception as e:
            logger.exception("Sync failed unexpectedly")
            self.backoff.failure(CYCLE_KEY)
            return self._fail(stats, "error", e)

        self.backoff.success(CYCLE_KEY)
        self.last_completed_at = self._clock()
        self._set_state(SyncState.IDLE)
        logger.info(
            "Sync done: {} pulled, {} updated, {} deleted, {} cached, {} pushed",
            stats.pulled, stats.updated, stats.deleted, stats.cached, stats.pushed,
        )
        return stats.result(success=True)

    def _fail(self, stats: _CycleStats, reason: str, error: Exception | None = None) -> SyncResult:
        if error is not None:
            stats.errors.append(str(error))
            logger.warning("Sync failed ({}): {}", reason, error)
        else:
            logger.info("Sync stopped ({})", reason)
        self._set_state(SyncState.FAILED, reason)
        self._set_state(SyncState.IDLE)
        return stats.result(success=False, reason=reason)

    # --- Phases ---

    def _diff(self, remote_bookmarks: list[RemoteBookmark], stats: _CycleStats) -> None:
        for remote in remote_bookmarks:
            with self.store.record_lock(remote.id):
                diff = diff_bookmark(
                    self.store.get(remote.id), self.store.get_progress(remote.id), remote
                )
                if diff.is_empty:
                    continue
                if diff.bookmark is not None:
                    self.store.upsert(diff.bookmark)
                    stats.updated += 1
                if diff.progress is not None:
                    self.store.set_progress(remote.id, diff.progress)
                    stats.updated += 1

    def _delete_orphans(self, remote_ids: set[int], stats: _CycleStats) -> None:
        for bookmark_id in sorted(self.store.list_ids() - remote_ids):
            logger.debug("Bookmark {} is gone from the server, deleting", bookmark_id)
            self.store.delete(bookmark_id)
            self.cache.remove_bookmark(bookmark_id)
            self.backoff.success(_push_key(bookmark_id))
            self._no_content.pop(bookmark_id, None)
            stats.deleted += 1

    def _needs_content(self, bookmark: Bookmark) -> bool:
        current = self.cache.get_current(bookmark.id)
        if current is not None and current.content_version >= bookmark.content_version:
            return False
        if self._no_content.get(bookmark.id) == bookmark.content_version:
            return False
        return self.backoff.ready(_content_key(bookmark.id))

    def _cache_content(self, stats: _CycleStats) -> None:
        targets: list[Bookmark] = []
        for bookmark in self.store.list_all():
            if bookmark.is_archived:
                if self.cache.list_entries(bookmark.id):
                    logger.debug("Bookmark {} archived, dropping cached content", bookmark.id)
                    self.cache.remove_bookmark(bookmark.id)
            elif self._needs_content(bookmark):
                targets.append(bookmark)
        if not targets:
            return

        logger.info("Caching content for {} bookmark(s)", len(targets))
        with ThreadPoolExecutor(max_workers=self.fetch_workers, thread_name_prefix="fetch") as pool:
            futures = {pool.submit(self.remote.fetch_content, b.id): b for b in targets}
            try:
                for future in as_completed(futures):
                    bookmark = futures[future]
                    self._store_content(bookmark, future, stats)
                    if self._cancel.is_set():
                        break
            finally:
                for future in futures:
                    future.cancel()

    def _store_content(self, bookmark: Bookmark, future: Future, stats: _CycleStats) -> None:
        key = _content_key(bookmark.id)
        try:
            self.cache.put(bookmark.id, bookmark.content_version, future.result())
        except AuthError:
            raise
        except NotFound as e:
            # No snapshot at this version; retried once the content version changes.
            self._no_content[bookmark.id] = bookmark.content_version
            self.backoff.success(key)
            logger.info("Bookmark {} has no cacheable content: {}", bookmark.id, e)
            return
        except Exception as e:
            # Content stays unavailable offline; the next cycle retries.
            retry_after = e.retry_after if isinstance(e, RateLimited) else None
            self.backoff.failure(key, retry_after)
            stats.errors.append(f"content {bookmark.id}: {e}")
            logger.warning("Could not cache bookmark {}: {}", bookmark.id, e)
            return
        self.backoff.success(key)
        self._no_content.pop(bookmark.id, None)
        stats.cached += 1

    def _push_pending(self, stats: _CycleStats) -> None:
        for progress in self.store.list_pending_progress():
            self._checkpoint()
            key = _push_key(progress.bookmark_id)
            if not self.backoff.ready(key):
                continue
            try:
                result = self.remote.push_progress(progress.bookmark_id, progress.scroll_percent)
                if result.status is PushStatus.CONFLICT:
                    msg = f"Server holds different progress for bookmark {progress.bookmark_id}"
                    raise ConflictError(
                        msg, scroll_percent=result.scroll_percent, updated_at=result.updated_at
                    )
            except ConflictError as e:
                if self._resolve_push_conflict(progress, e):
                    stats.updated += 1
                continue
            except RateLimited as e:
                self.backoff.failure(key, e.retry_after)
                stats.errors.append(f"push {progress.bookmark_id}: {e}")
                continue
            except NetworkError as e:
                self.backoff.failure(key)
                stats.errors.append(f"push {progress.bookmark_id}: {e}")
                continue
            except NotFound as e:
                # Gone on the server; a full sync removes the local record.
                logger.warning(
                    "Dropping pending progress for bookmark {}: {}", progress.bookmark_id, e
                )
                self.backoff.success(key)
                self._settle(progress)
                stats.errors.append(f"push {progress.bookmark_id}: {e}")
                continue
            except RequestRejected as e:
                self.backoff.failure(key)
                stats.errors.append(f"push {progress.bookmark_id}: {e}")
                continue

            self.backoff.success(key)
            if self._settle(progress):
                stats.pushed += 1

    def _settle(self, sent: ReadProgress) -> bool:
        """Clear the pending flag unless the record changed while pushing."""
        with self.store.record_lock(sent.bookmark_id):
            if self.store.get_progress(sent.bookmark_id) != sent:
                logger.debug("Progress for bookmark {} changed during push", sent.bookmark_id)
                return False
            self.store.set_progress(sent.bookmark_id, replace(sent, pending_push=False))
        return True

    def _resolve_push_conflict(self, sent: ReadProgress, conflict: ConflictError) -> bool:
        """Apply the server's value if it is newer. Returns True if local changed."""
        key = _push_key(sent.bookmark_id)
        with self.store.record_lock(sent.bookmark_id):
            if self.store.get_progress(sent.bookmark_id) != sent:
                return False
            if conflict.scroll_percent is None:
                self.backoff.failure(key)
                return False
            if math.isclose(conflict.scroll_percent, sent.scroll_percent):
                self.store.set_progress(sent.bookmark_id, replace(sent, pending_push=False))
                self.backoff.success(key)
                return True
            resolved = resolve_progress_conflict(sent, conflict.scroll_percent, conflict.updated_at)
            if resolved is sent:
                logger.debug("Conflict on bookmark {}: keeping local progress", sent.bookmark_id)
                self.backoff.failure(key)
                return False
            logger.debug("Conflict on bookmark {}: adopting server progress", sent.bookmark_id)
            self.store.set_progress(sent.bookmark_id, resolved)
        self.backoff.success(key)
        return True

    def _commit(self, cursor: SyncCursor, token: str | None, stats: _CycleStats) -> None:
        new_token = token if token is not None else cursor.token
        if new_token == cursor.token and not stats.mutated:
            logger.debug("Nothing changed, cursor left at {!r}", cursor.token)
        else:
            self.store.set_cursor(SyncCursor(token=new_token, last_synced_at=self._clock()))
        self.cache.collect_garbage()
