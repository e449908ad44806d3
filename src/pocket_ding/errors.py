"""Exception taxonomy shared by the remote client, the cache and the sync engine."""

from datetime import datetime


class PocketDingError(Exception):
    """Base class for all errors raised by this package."""


class NetworkError(PocketDingError):
    """Transient transport failure (5xx, timeout, connection refused)."""


class RateLimited(NetworkError):
    """Server asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AuthError(PocketDingError):
    """Credentials were rejected. Fatal for the session."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConflictError(PocketDingError):
    """Local and remote read state diverged. Resolved locally, never surfaced."""

    def __init__(
        self,
        message: str,
        *,
        scroll_percent: float | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.scroll_percent = scroll_percent
        self.updated_at = updated_at


class NotFound(PocketDingError):
    """A required record is missing, locally or on the server (HTTP 404)."""


class RequestRejected(PocketDingError):
    """The server refused a request for a reason other than auth or rate limits (4xx)."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class CacheWriteIncomplete(PocketDingError):
    """Cached content failed verification; the previous entry is untouched."""
