"""Tests for auto-sync scheduling."""

import time
from datetime import UTC, datetime, timedelta

from pocket_ding.config import Settings
from pocket_ding.core.store.local_store import LocalStore
from pocket_ding.core.sync.auto_sync import AutoSyncer, is_sync_needed, maybe_auto_sync
from pocket_ding.core.sync.engine import SyncEngine
from pocket_ding.errors import AuthError, NetworkError
from pocket_ding.models.bookmark import SyncCursor
from tests.unit.fakes import FakeRemote, ManualClock, make_remote

SETTINGS = Settings(base_url="https://links.example.com", token="t", sync_interval=3600)


def test_sync_needed_without_previous_sync(store: LocalStore) -> None:
    assert is_sync_needed(store, 3600)


def test_sync_needed_depends_on_interval(store: LocalStore) -> None:
    last = datetime(2024, 1, 1, 12, tzinfo=UTC)
    store.set_cursor(SyncCursor(token="c", last_synced_at=last))

    assert not is_sync_needed(store, 3600, now=last + timedelta(minutes=59))
    assert is_sync_needed(store, 3600, now=last + timedelta(hours=1))


def test_runs_when_due(engine: SyncEngine, remote: FakeRemote) -> None:
    remote.add(make_remote(1))

    result = maybe_auto_sync(engine, SETTINGS)

    assert result is not None
    assert result.success
    assert engine.store.list_ids() == {1}


def test_skips_within_interval(engine: SyncEngine, remote: FakeRemote) -> None:
    maybe_auto_sync(engine, SETTINGS)
    assert maybe_auto_sync(engine, SETTINGS) is None
    assert len(remote.calls_to("list_changed_since")) == 1


def test_skips_when_disabled(engine: SyncEngine, remote: FakeRemote) -> None:
    settings = Settings(base_url="https://x", token="t", auto_sync=False)
    assert maybe_auto_sync(engine, settings) is None
    assert remote.calls == []


def test_skips_while_session_invalid(engine: SyncEngine, remote: FakeRemote) -> None:
    remote.fail_next("list_changed_since", AuthError("expired"))
    engine.run_incremental_sync()

    assert maybe_auto_sync(engine, SETTINGS) is None
    assert len(remote.calls_to("list_changed_since")) == 1


def test_skips_during_cycle_backoff(
    engine: SyncEngine, remote: FakeRemote, clock: ManualClock
) -> None:
    remote.fail_next("list_changed_since", NetworkError("offline"))
    engine.run_incremental_sync()

    assert maybe_auto_sync(engine, SETTINGS) is None

    clock.advance(engine.backoff.cap)
    result = maybe_auto_sync(engine, SETTINGS)
    assert result is not None
    assert result.success


def test_auto_syncer_runs_in_background(engine: SyncEngine, remote: FakeRemote) -> None:
    remote.add(make_remote(1))
    syncer = AutoSyncer(engine, SETTINGS, poll_interval=0.01)

    syncer.start()
    try:
        for _ in range(500):
            if engine.store.get_cursor().last_synced_at is not None:
                break
            time.sleep(0.01)
    finally:
        syncer.stop(timeout=5)

    assert engine.store.list_ids() == {1}
