"""Offline reading and sync for Linkding bookmarks."""

from pocket_ding.api import LinkdingApi
from pocket_ding.config import APP_VERSION
from pocket_ding.core.cache.content_cache import ContentCache
from pocket_ding.core.progress import ReadProgressTracker, compute_progress
from pocket_ding.core.store.local_store import LocalStore
from pocket_ding.core.sync.engine import SyncEngine, SyncState
from pocket_ding.core.version_guard import VersionGuard
from pocket_ding.protocols import RemoteProtocol, WorkerChannelProtocol

__version__ = APP_VERSION

__all__ = [
    "ContentCache",
    "LinkdingApi",
    "LocalStore",
    "ReadProgressTracker",
    "RemoteProtocol",
    "SyncEngine",
    "SyncState",
    "VersionGuard",
    "WorkerChannelProtocol",
    "compute_progress",
]
