"""Auto-sync logic: run an incremental sync when the interval has elapsed."""

import threading
from datetime import UTC, datetime

from loguru import logger

from pocket_ding.config import Settings
from pocket_ding.core.store.local_store import LocalStore
from pocket_ding.core.sync.engine import SyncEngine
from pocket_ding.models.bookmark import SyncResult


def is_sync_needed(
    store: LocalStore,
    interval: int,
    *,
    now: datetime | None = None,
    last_completed: datetime | None = None,
) -> bool:
    """Check if a sync is due based on interval.

    Args:
        store: Local store holding the sync cursor.
        interval: Minimum seconds between syncs.
        now: Current time, for tests.
        last_completed: In-memory time of the last successful cycle, which
            may be newer than the persisted one after a no-op sync.

    Returns:
        True if a sync should be performed.
    """
    last_synced = store.get_cursor().last_synced_at
    if last_completed is not None and (last_synced is None or last_completed > last_synced):
        last_synced = last_completed
    if last_synced is None:
        return True
    now = now or datetime.now(UTC)
    return (now - last_synced).total_seconds() >= interval


def maybe_auto_sync(engine: SyncEngine, settings: Settings) -> SyncResult | None:
    """Run an incremental sync if one is due.

    Skips without blocking if:
    - Auto sync is disabled in settings.
    - The session was rejected and awaits re-authentication.
    - A previous failure put the cycle into backoff.
    - The interval since the last successful sync has not elapsed.

    Returns:
        The sync result, or None when skipped.
    """
    if not settings.auto_sync or engine.session_invalid:
        return None
    if not engine.cycle_ready():
        logger.debug("Auto sync skipped: backing off after a failed cycle")
        return None
    if not is_sync_needed(
        engine.store, settings.sync_interval, last_completed=engine.last_completed_at
    ):
        return None
    return engine.run_incremental_sync()


class AutoSyncer:
    """Background thread calling ``maybe_auto_sync`` on a fixed poll period."""

    def __init__(self, engine: SyncEngine, settings: Settings, *, poll_interval: float = 60.0) -> None:
        self.engine = engine
        self.settings = settings
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="auto-sync", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                maybe_auto_sync(self.engine, self.settings)
            except Exception:
                logger.warning("Auto sync failed, will retry", exc_info=True)
            self._stop.wait(self.poll_interval)
