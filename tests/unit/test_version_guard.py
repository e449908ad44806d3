"""Tests for VersionGuard: shell/worker build comparison."""

from pocket_ding.core.version_guard import VersionGuard, VersionStatus
from pocket_ding.models.bookmark import VersionInfo
from tests.unit.fakes import FakeWorkerChannel, version_reply

SHELL = VersionInfo(version="0.1.0", build_timestamp="2024-01-01T00:00:00Z")


def _guard(channel: FakeWorkerChannel, seen: list[tuple[VersionInfo, VersionInfo]]) -> VersionGuard:
    return VersionGuard(
        SHELL, channel, timeout=0.05, on_mismatch=lambda shell, worker: seen.append((shell, worker))
    )


def test_matching_builds() -> None:
    seen: list[tuple[VersionInfo, VersionInfo]] = []
    check = _guard(FakeWorkerChannel(version_reply(SHELL.build_timestamp)), seen).check()

    assert check.status is VersionStatus.MATCH
    assert check.worker == SHELL
    assert seen == []


def test_no_worker_is_unknown_not_mismatch() -> None:
    seen: list[tuple[VersionInfo, VersionInfo]] = []
    check = _guard(FakeWorkerChannel(attached=False), seen).check()

    assert check.status is VersionStatus.UNKNOWN
    assert not check.is_mismatch
    assert seen == []


def test_timeout_is_unknown_and_cancels_request() -> None:
    """A worker that never answers resolves to unknown within the timeout."""
    channel = FakeWorkerChannel(reply=None)
    seen: list[tuple[VersionInfo, VersionInfo]] = []

    check = _guard(channel, seen).check()

    assert check.status is VersionStatus.UNKNOWN
    assert channel.futures[0].cancelled()
    assert seen == []


def test_malformed_reply_is_unknown() -> None:
    seen: list[tuple[VersionInfo, VersionInfo]] = []
    check = _guard(FakeWorkerChannel({"type": "VERSION_INFO"}), seen).check()
    assert check.status is VersionStatus.UNKNOWN


def test_mismatch_fires_once_per_window() -> None:
    seen: list[tuple[VersionInfo, VersionInfo]] = []
    channel = FakeWorkerChannel(version_reply("2023-12-01T00:00:00Z"))
    guard = _guard(channel, seen)

    assert guard.check().is_mismatch
    assert guard.check().is_mismatch
    assert len(seen) == 1
    assert seen[0][1].build_timestamp == "2023-12-01T00:00:00Z"


def test_new_worker_build_opens_new_window() -> None:
    seen: list[tuple[VersionInfo, VersionInfo]] = []
    channel = FakeWorkerChannel(version_reply("old-1"))
    guard = _guard(channel, seen)
    guard.check()

    channel.reply = version_reply("old-2")
    guard.check()

    assert [w.build_timestamp for _s, w in seen] == ["old-1", "old-2"]


def test_reset_opens_new_window() -> None:
    seen: list[tuple[VersionInfo, VersionInfo]] = []
    guard = _guard(FakeWorkerChannel(version_reply("old")), seen)
    guard.check()
    guard.reset()
    guard.check()
    assert len(seen) == 2


def test_requests_version_message() -> None:
    channel = FakeWorkerChannel(version_reply(SHELL.build_timestamp))
    _guard(channel, []).check()
    assert channel.requests == [{"type": "REQUEST_VERSION"}]
