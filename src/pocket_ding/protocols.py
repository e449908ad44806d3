"""Protocols for dependency injection across the sync engine."""

from concurrent.futures import Future
from typing import Any, Protocol, runtime_checkable

from pocket_ding.models.bookmark import ContentBlob, PushResult, ReadProgress, RemoteBookmark


@runtime_checkable
class RemoteProtocol(Protocol):
    """Protocol for remote bookmark service clients."""

    def list_changed_since(self, cursor: str | None) -> tuple[list[RemoteBookmark], str | None]:
        """Return bookmarks changed since ``cursor`` and the next cursor."""
        ...

    def fetch_content(self, bookmark_id: int) -> ContentBlob:
        """Download the cacheable article body of a bookmark."""
        ...

    def push_progress(self, bookmark_id: int, scroll_percent: float) -> PushResult:
        """Send local read progress; returns ack or the server's conflicting state."""
        ...


@runtime_checkable
class WorkerChannelProtocol(Protocol):
    """Request/response channel to the background worker."""

    def request(self, message: dict[str, Any]) -> "Future[dict[str, Any]] | None":
        """Post a message. Returns None when no worker is attached."""
        ...


class ProgressSink(Protocol):
    """Receiver for locally recorded read progress."""

    def __call__(self, bookmark_id: int, progress: ReadProgress) -> object: ...
