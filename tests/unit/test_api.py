"""Tests for LinkdingApi: HTTP client with typed errors and retries."""

from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from pocket_ding.api import LinkdingApi, parse_remote_bookmark, retry_with_backoff
from pocket_ding.errors import AuthError, NetworkError, NotFound, RateLimited, RequestRejected
from pocket_ding.models.bookmark import PushStatus


@pytest.fixture
def api_with_mock_session() -> tuple[LinkdingApi, MagicMock, list[float]]:
    """Create a LinkdingApi with a mocked requests.Session and a recording sleep."""
    sleeps: list[float] = []
    with patch("pocket_ding.api.requests.Session") as mock_session_cls:
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session
        api = LinkdingApi("https://links.example.com/", "secret", sleep=sleeps.append)
    return api, mock_session, sleeps


def _make_response(
    data: Any = None, *, status: int = 200, headers: dict[str, str] | None = None, content: bytes = b""
) -> MagicMock:
    """Create a mock HTTP response with given JSON data and status."""
    response = MagicMock()
    response.status_code = status
    response.json.return_value = data
    response.headers = headers or {}
    response.content = content
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status}")
    return response


def _bookmark(bookmark_id: int, modified: str, **extra: Any) -> dict[str, Any]:
    return {
        "id": bookmark_id,
        "url": f"https://example.com/{bookmark_id}",
        "title": f"Article {bookmark_id}",
        "date_added": "2024-01-01T00:00:00Z",
        "date_modified": modified,
        "tag_names": ["t"],
        **extra,
    }


def _page(results: list[dict[str, Any]], next_url: str | None = None) -> dict[str, Any]:
    return {"count": len(results), "next": next_url, "previous": None, "results": results}


def test_session_sends_token_header() -> None:
    with patch("pocket_ding.api.requests.Session") as mock_session_cls:
        mock_session = MagicMock()
        mock_session.headers = {}
        mock_session_cls.return_value = mock_session
        LinkdingApi("https://links.example.com", "secret")
    assert mock_session.headers["Authorization"] == "Token secret"


def test_list_changed_since_pages_both_listings(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    """Active and archived listings are paged, and the cursor is the newest date_modified."""
    api, session, _ = api_with_mock_session
    session.request.side_effect = [
        _make_response(
            _page(
                [_bookmark(1, "2024-01-02T00:00:00Z")],
                next_url="https://links.example.com/api/bookmarks/?limit=100&offset=100",
            )
        ),
        _make_response(_page([_bookmark(2, "2024-01-05T00:00:00Z")])),
        _make_response(_page([_bookmark(3, "2024-01-03T00:00:00Z", is_archived=True)])),
    ]

    bookmarks, cursor = api.list_changed_since("2024-01-01T00:00:00Z")

    assert [b.id for b in bookmarks] == [1, 2, 3]
    assert bookmarks[2].is_archived
    assert cursor == "2024-01-05T00:00:00Z"
    urls = [c.args[1] for c in session.request.call_args_list]
    assert urls == [
        "https://links.example.com/api/bookmarks/",
        "https://links.example.com/api/bookmarks/?limit=100&offset=100",
        "https://links.example.com/api/bookmarks/archived/",
    ]
    first_params = session.request.call_args_list[0].kwargs["params"]
    assert first_params["modified_since"] == "2024-01-01T00:00:00Z"


def test_list_changed_since_keeps_cursor_when_nothing_changed(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, _ = api_with_mock_session
    session.request.side_effect = [_make_response(_page([])), _make_response(_page([]))]

    bookmarks, cursor = api.list_changed_since("2024-01-01T00:00:00Z")

    assert bookmarks == []
    assert cursor == "2024-01-01T00:00:00Z"


@pytest.mark.parametrize("status", [401, 403])
def test_auth_errors_are_not_retried(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]], status: int
) -> None:
    api, session, sleeps = api_with_mock_session
    session.request.return_value = _make_response({}, status=status)

    with pytest.raises(AuthError) as exc_info:
        api.list_changed_since(None)

    assert exc_info.value.status_code == status
    assert session.request.call_count == 1
    assert sleeps == []


def test_server_errors_retry_then_raise_network_error(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, sleeps = api_with_mock_session
    session.request.return_value = _make_response({}, status=503)

    with pytest.raises(NetworkError):
        api.list_changed_since(None)

    assert session.request.call_count == api.max_retries + 1
    assert len(sleeps) == api.max_retries


def test_connection_error_recovers_on_retry(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, sleeps = api_with_mock_session
    session.request.side_effect = [
        requests.ConnectionError("refused"),
        _make_response(_page([])),
        _make_response(_page([])),
    ]

    bookmarks, _ = api.list_changed_since(None)

    assert bookmarks == []
    assert len(sleeps) == 1


def test_rate_limit_honors_retry_after(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, sleeps = api_with_mock_session
    session.request.side_effect = [
        _make_response({}, status=429, headers={"Retry-After": "7"}),
        _make_response(_page([])),
        _make_response(_page([])),
    ]

    api.list_changed_since(None)

    assert sleeps == [7.0]


def test_rate_limit_longer_than_max_delay_raises(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    """A Retry-After beyond the retry window is surfaced for the caller to reschedule."""
    api, session, sleeps = api_with_mock_session
    session.request.return_value = _make_response({}, status=429, headers={"Retry-After": "600"})

    with pytest.raises(RateLimited) as exc_info:
        api.list_changed_since(None)

    assert exc_info.value.retry_after == 600.0
    assert sleeps == []


def test_fetch_content_downloads_newest_complete_asset(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, _ = api_with_mock_session
    assets = [
        {"id": 10, "status": "complete", "date_created": "2024-01-01T00:00:00Z", "content_type": "text/html"},
        {"id": 11, "status": "complete", "date_created": "2024-02-01T00:00:00Z", "content_type": "text/html"},
        {"id": 12, "status": "pending", "date_created": "2024-03-01T00:00:00Z"},
    ]
    session.request.side_effect = [
        _make_response(_page(assets)),
        _make_response(content=b"<html>snapshot</html>"),
    ]

    blob = api.fetch_content(5)

    assert blob.data == b"<html>snapshot</html>"
    assert blob.asset_id == 11
    assert session.request.call_args_list[1].args[1].endswith("/bookmarks/5/assets/11/download/")


def test_fetch_content_without_complete_asset_raises_not_found(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, _ = api_with_mock_session
    session.request.return_value = _make_response(_page([{"id": 1, "status": "failure"}]))

    with pytest.raises(NotFound):
        api.fetch_content(5)


def test_push_progress_ack(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, _ = api_with_mock_session
    session.request.return_value = _make_response({"id": 5})

    result = api.push_progress(5, 100.0)

    assert result.status is PushStatus.ACK
    call = session.request.call_args
    assert call.args[0] == "PATCH"
    assert call.kwargs["json"] == {"read_progress": 100.0, "unread": False}


def test_push_progress_conflict_carries_server_state(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, _ = api_with_mock_session
    session.request.return_value = _make_response(
        {"read_progress": 80, "read_updated_at": "2024-01-02T00:00:00Z"}, status=409
    )

    result = api.push_progress(5, 40.0)

    assert result.status is PushStatus.CONFLICT
    assert result.scroll_percent == 80.0
    assert result.updated_at is not None


def test_parse_remote_bookmark_requires_keys() -> None:
    """Guard against API changes: missing keys raise ValueError."""
    with pytest.raises(ValueError, match="bad bookmark keys"):
        parse_remote_bookmark({"id": 1, "url": "https://example.com"})


def test_parse_remote_bookmark_reads_progress() -> None:
    remote = parse_remote_bookmark(
        _bookmark(1, "2024-01-02T00:00:00", read_progress=42.5, content_version=3)
    )
    assert remote.read_progress == 42.5
    assert remote.content_version == 3
    assert remote.remote_updated_at.tzinfo is not None
    assert remote.tags == ("t",)


def test_retry_with_backoff_does_not_retry_other_errors() -> None:
    calls: list[int] = []

    def boom() -> None:
        calls.append(1)
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        retry_with_backoff(boom, sleep=lambda _s: None)
    assert len(calls) == 1


def test_test_connection_reports_failure(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, _ = api_with_mock_session
    session.request.return_value = _make_response({}, status=401)
    assert api.test_connection() is False
    session.request.return_value = _make_response(_page([]))
    assert api.test_connection() is True


def test_push_to_deleted_bookmark_raises_not_found(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, sleeps = api_with_mock_session
    session.request.return_value = _make_response({"detail": "Not found."}, status=404)

    with pytest.raises(NotFound):
        api.push_progress(5, 40.0)

    assert session.request.call_count == 1
    assert sleeps == []


def test_other_client_errors_raise_request_rejected(
    api_with_mock_session: tuple[LinkdingApi, MagicMock, list[float]],
) -> None:
    api, session, _ = api_with_mock_session
    session.request.return_value = _make_response({}, status=400)

    with pytest.raises(RequestRejected) as exc_info:
        api.push_progress(5, 40.0)

    assert exc_info.value.status_code == 400
    assert session.request.call_count == 1


def test_parse_remote_bookmark_rejects_empty_modified_date() -> None:
    with pytest.raises(ValueError, match="date_modified"):
        parse_remote_bookmark(_bookmark(1, ""))
