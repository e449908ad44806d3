"""Domain models for the offline bookmark mirror."""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


@dataclass(frozen=True)
class Bookmark:
    """A bookmark as mirrored in the local store."""

    id: int
    url: str
    title: str
    remote_updated_at: datetime
    description: str = ""
    tags: tuple[str, ...] = ()
    is_archived: bool = False
    unread: bool = True
    date_added: datetime | None = None
    content_version: int = 1


@dataclass(frozen=True)
class RemoteBookmark:
    """A bookmark as returned by the remote service.

    ``content_version`` is only present when the server tracks it. The read
    state fields carry whatever progress the server last recorded.
    """

    id: int
    url: str
    title: str
    remote_updated_at: datetime
    description: str = ""
    tags: tuple[str, ...] = ()
    is_archived: bool = False
    unread: bool = True
    date_added: datetime | None = None
    content_version: int | None = None
    read_progress: float | None = None
    read_updated_at: datetime | None = None


@dataclass(frozen=True)
class ReadProgress:
    """Scroll-derived read position of one bookmark."""

    bookmark_id: int
    scroll_percent: float
    last_read_at: datetime
    pending_push: bool = False

    def __post_init__(self) -> None:
        if math.isnan(self.scroll_percent) or not 0 <= self.scroll_percent <= 100:
            msg = f"scroll_percent out of range: {self.scroll_percent!r}"
            raise ValueError(msg)


@dataclass(frozen=True)
class ContentBlob:
    """Downloaded article content."""

    data: bytes
    content_type: str = "text/html"
    asset_id: int | None = None


@dataclass(frozen=True)
class CacheEntry:
    """A cached copy of a bookmark's content at one content version."""

    bookmark_id: int
    content_version: int
    path: str
    content_type: str
    sha256: str
    size: int
    cached_at: datetime
    is_current: bool = False


@dataclass(frozen=True)
class SyncCursor:
    """Process-wide sync metadata. The token is opaque."""

    token: str | None = None
    last_synced_at: datetime | None = None
    sync_in_flight: bool = False


@dataclass(frozen=True)
class VersionInfo:
    """Build identity of the shell or the background worker."""

    version: str
    build_timestamp: str


class PushStatus(StrEnum):
    ACK = "ack"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class PushResult:
    """Outcome of pushing read progress to the server."""

    status: PushStatus
    scroll_percent: float | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class BookmarkFilter:
    """Filter applied by ``LocalStore.list_all``.

    Tags use any-of matching. Date bounds are inclusive.
    """

    tags: tuple[str, ...] = ()
    read_status: str = "all"
    archived_status: str = "all"
    added_after: datetime | None = None
    added_before: datetime | None = None

    def __post_init__(self) -> None:
        if self.read_status not in ("all", "read", "unread"):
            msg = f"bad read_status: {self.read_status!r}"
            raise ValueError(msg)
        if self.archived_status not in ("all", "archived", "unarchived"):
            msg = f"bad archived_status: {self.archived_status!r}"
            raise ValueError(msg)


@dataclass(frozen=True)
class SyncResult:
    """Summary of one sync cycle."""

    success: bool
    reason: str | None = None
    pulled: int = 0
    updated: int = 0
    deleted: int = 0
    cached: int = 0
    pushed: int = 0
    coalesced: bool = False
    errors: tuple[str, ...] = ()
