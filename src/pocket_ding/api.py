"""Linkding API client with typed errors and retry/backoff."""

import random
import time
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import requests
from loguru import logger

from pocket_ding.config import (
    DEFAULT_BASE_DELAY,
    DEFAULT_JITTER,
    DEFAULT_MAX_DELAY,
    DEFAULT_MAX_RETRIES,
    REQUEST_TIMEOUT,
    Settings,
)
from pocket_ding.errors import (
    AuthError,
    NetworkError,
    NotFound,
    PocketDingError,
    RateLimited,
    RequestRejected,
)
from pocket_ding.models.bookmark import ContentBlob, PushResult, PushStatus, RemoteBookmark

T = TypeVar("T")

PAGE_SIZE = 100

_REQUIRED_BOOKMARK_KEYS = {"id", "url", "date_modified"}


def _calculate_delay(attempt: int, base_delay: float, max_delay: float, jitter: float) -> float:
    """Exponential backoff with jitter, capped at ``max_delay``."""
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + delay * jitter * random.random()


def retry_with_backoff(
    func: Callable[[], T],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func``, retrying transient failures with exponential backoff.

    ``RateLimited`` waits for the server's ``retry_after`` when given; if that
    is longer than ``max_delay`` the error is raised right away so the caller
    can reschedule. ``AuthError`` and any non-network error propagate
    immediately. After the last attempt the final error propagates.
    """
    for attempt in range(max_retries + 1):
        try:
            return func()
        except NetworkError as e:
            if attempt == max_retries:
                logger.warning(
                    "{} failed after {} attempts: {}", operation_name, attempt + 1, e
                )
                raise

            delay = _calculate_delay(attempt, base_delay, max_delay, jitter)
            if isinstance(e, RateLimited) and e.retry_after is not None:
                if e.retry_after > max_delay:
                    raise
                delay = e.retry_after

            logger.debug(
                "{} attempt {}/{} failed ({}), retrying in {:.2f}s",
                operation_name, attempt + 1, max_retries + 1, e, delay,
            )
            sleep(delay)

    msg = f"{operation_name} failed"
    raise NetworkError(msg)


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given as seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max((when - datetime.now(UTC)).total_seconds(), 0.0)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=UTC)


def parse_remote_bookmark(data: dict[str, Any]) -> RemoteBookmark:
    """Build a RemoteBookmark from an API record.

    Raises:
        ValueError: If required fields are missing (guards against API changes).
    """
    missing = _REQUIRED_BOOKMARK_KEYS - data.keys()
    if missing:
        msg = f"bad bookmark keys, missing {sorted(missing)!r}"
        raise ValueError(msg)

    remote_updated_at = _parse_ts(data["date_modified"])
    if remote_updated_at is None:
        msg = f"bookmark {data['id']!r} has an empty date_modified"
        raise ValueError(msg)
    read_progress = data.get("read_progress")
    return RemoteBookmark(
        id=int(data["id"]),
        url=data["url"],
        title=data.get("title") or data.get("website_title") or "",
        description=data.get("description") or "",
        tags=tuple(data.get("tag_names") or ()),
        is_archived=bool(data.get("is_archived", False)),
        unread=bool(data.get("unread", True)),
        date_added=_parse_ts(data.get("date_added")),
        remote_updated_at=remote_updated_at,
        content_version=data.get("content_version"),
        read_progress=float(read_progress) if read_progress is not None else None,
        read_updated_at=_parse_ts(data.get("read_updated_at")),
    )


class LinkdingApi:
    """Client for the Linkding REST API.

    Errors are mapped onto the package taxonomy: 401/403 raise AuthError,
    429 raises RateLimited, 404 raises NotFound, other 4xx raise
    RequestRejected, 5xx and transport failures raise NetworkError.
    Every call is retried with bounded backoff.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self.sess = requests.Session()
        self.sess.headers.update(
            {"Authorization": f"Token {token}", "Accept": "application/json"}
        )
        logger.debug("API ready: base_url {!r}, timeout {}s", self.base_url, timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LinkdingApi":
        return cls(settings.base_url, settings.token)

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/api{path}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        allow_conflict: bool = False,
    ) -> requests.Response:
        url = self._url(path)
        logger.debug("Making request: {} {}", method, url)
        try:
            r = self.sess.request(method, url, params=params, json=json_body, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            msg = f"{method} {url} failed: {e}"
            raise NetworkError(msg) from e

        if r.status_code in (401, 403):
            msg = f"{method} {url} rejected credentials ({r.status_code})"
            raise AuthError(msg, status_code=r.status_code)
        if r.status_code == 429:
            retry_after = _parse_retry_after(r.headers.get("Retry-After"))
            msg = f"{method} {url} rate limited (retry after {retry_after!r})"
            raise RateLimited(msg, retry_after=retry_after)
        if r.status_code >= 500:
            msg = f"{method} {url} server error {r.status_code}"
            raise NetworkError(msg)
        if r.status_code == 409 and allow_conflict:
            return r
        if r.status_code == 404:
            msg = f"{method} {url} not found"
            raise NotFound(msg)
        if r.status_code >= 400:
            msg = f"{method} {url} rejected ({r.status_code})"
            raise RequestRejected(msg, status_code=r.status_code)
        return r

    def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        return retry_with_backoff(
            lambda: self._request(method, path, **kwargs),
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            operation_name=f"{method} {path}",
            sleep=self._sleep,
        )

    def _paginate(self, path: str, params: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        """Yield results across pages, following ``next`` links."""
        next_path: str | None = path
        next_params: dict[str, Any] | None = {"limit": PAGE_SIZE, "offset": 0, **(params or {})}
        while next_path:
            page = self._call("GET", next_path, params=next_params).json()
            if "results" not in page:
                msg = f"bad page keys: {sorted(page.keys())!r}"
                raise ValueError(msg)
            yield from page["results"]
            next_path = page.get("next")
            # ``next`` already carries the query string.
            next_params = None

    def list_changed_since(self, cursor: str | None) -> tuple[list[RemoteBookmark], str | None]:
        """List active and archived bookmarks modified since ``cursor``.

        The returned cursor is the newest ``date_modified`` seen, or ``cursor``
        itself when nothing changed.
        """
        params: dict[str, Any] = {"q": ""}
        if cursor:
            params["modified_since"] = cursor

        bookmarks: list[RemoteBookmark] = []
        new_cursor = cursor
        newest: datetime | None = _parse_ts(cursor) if cursor else None
        for path in ("/bookmarks/", "/bookmarks/archived/"):
            for raw in self._paginate(path, params):
                bookmark = parse_remote_bookmark(raw)
                bookmarks.append(bookmark)
                if newest is None or bookmark.remote_updated_at > newest:
                    newest = bookmark.remote_updated_at
                    new_cursor = raw["date_modified"]

        logger.debug("Listed {} changed bookmarks since {!r}", len(bookmarks), cursor)
        return bookmarks, new_cursor

    def fetch_content(self, bookmark_id: int) -> ContentBlob:
        """Download the newest completed snapshot asset of a bookmark.

        Raises:
            NotFound: If the server has no completed asset for the bookmark.
        """
        assets = [
            a
            for a in self._paginate(f"/bookmarks/{bookmark_id}/assets/")
            if a.get("status") == "complete"
        ]
        if not assets:
            msg = f"No completed asset for bookmark {bookmark_id}"
            raise NotFound(msg)

        asset = max(assets, key=lambda a: (a.get("date_created") or "", a["id"]))
        r = self._call("GET", f"/bookmarks/{bookmark_id}/assets/{asset['id']}/download/")
        content_type = asset.get("content_type") or r.headers.get("Content-Type", "text/html")
        logger.debug(
            "Downloaded asset {} for bookmark {} ({} bytes)", asset["id"], bookmark_id, len(r.content)
        )
        return ContentBlob(data=r.content, content_type=content_type, asset_id=asset["id"])

    def push_progress(self, bookmark_id: int, scroll_percent: float) -> PushResult:
        """Send read progress. A 409 reply carries the server's own progress."""
        r = self._call(
            "PATCH",
            f"/bookmarks/{bookmark_id}/",
            json_body={"read_progress": round(scroll_percent, 2), "unread": scroll_percent < 100},
            allow_conflict=True,
        )
        if r.status_code != 409:
            return PushResult(status=PushStatus.ACK)

        body = r.json()
        remote_percent = body.get("read_progress")
        return PushResult(
            status=PushStatus.CONFLICT,
            scroll_percent=float(remote_percent) if remote_percent is not None else None,
            updated_at=_parse_ts(body.get("read_updated_at")),
        )

    def test_connection(self) -> bool:
        """Return True if the server accepts our credentials."""
        try:
            self._request("GET", "/bookmarks/", params={"limit": 1})
        except (PocketDingError, requests.RequestException) as e:
            logger.warning("Connection test failed: {}", e)
            return False
        return True
