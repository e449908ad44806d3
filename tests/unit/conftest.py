"""Shared test fixtures."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from pocket_ding.core.cache.content_cache import ContentCache
from pocket_ding.core.store.local_store import LocalStore
from pocket_ding.core.sync.backoff import Backoff
from pocket_ding.core.sync.engine import SyncEngine
from tests.unit.fakes import FakeRemote, ManualClock


@pytest.fixture
def store(tmp_path: Path) -> Iterator[LocalStore]:
    s = LocalStore.open(tmp_path / "store.db")
    yield s
    s.close()


@pytest.fixture
def cache(tmp_path: Path) -> Iterator[ContentCache]:
    c = ContentCache(tmp_path / "cache")
    yield c
    c.close()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def engine(
    store: LocalStore, remote: FakeRemote, cache: ContentCache, clock: ManualClock
) -> SyncEngine:
    return SyncEngine(store, remote, cache, backoff=Backoff(clock=clock), fetch_workers=2)
