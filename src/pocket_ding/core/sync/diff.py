"""Pure reconciliation of remote bookmark state against the local record."""

import math
from dataclasses import dataclass
from datetime import datetime

from pocket_ding.models.bookmark import Bookmark, ReadProgress, RemoteBookmark


@dataclass(frozen=True)
class BookmarkDiff:
    """Writes needed to bring one local bookmark up to date.

    ``None`` means the corresponding local record is already correct.
    """

    bookmark: Bookmark | None = None
    progress: ReadProgress | None = None

    @property
    def is_empty(self) -> bool:
        return self.bookmark is None and self.progress is None


def _clamp(percent: float) -> float:
    return min(max(percent, 0.0), 100.0)


def resolve_progress_conflict(
    local: ReadProgress, remote_percent: float, remote_updated_at: datetime | None
) -> ReadProgress:
    """Latest timestamp wins. Ties and an unknown remote time keep ``local``.

    Returns ``local`` itself when it wins, otherwise a settled record holding
    the remote value.
    """
    if remote_updated_at is None or remote_updated_at <= local.last_read_at:
        return local
    return ReadProgress(
        bookmark_id=local.bookmark_id,
        scroll_percent=_clamp(remote_percent),
        last_read_at=remote_updated_at,
        pending_push=False,
    )


def merge_bookmark(local: Bookmark | None, remote: RemoteBookmark) -> Bookmark | None:
    """Return the new local record, or None when ``local`` is current.

    The content version is the server's when it sends one. Otherwise the
    local version is kept and bumped when the URL changed.
    """
    if local is None:
        version = remote.content_version or 1
    else:
        remote_newer = remote.remote_updated_at > local.remote_updated_at or (
            remote.content_version is not None and remote.content_version > local.content_version
        )
        if not remote_newer:
            return None
        version = local.content_version
        if remote.content_version is not None:
            version = max(version, remote.content_version)
        elif remote.url != local.url:
            version += 1

    merged = Bookmark(
        id=remote.id,
        url=remote.url,
        title=remote.title,
        remote_updated_at=remote.remote_updated_at,
        description=remote.description,
        tags=remote.tags,
        is_archived=remote.is_archived,
        unread=remote.unread,
        date_added=remote.date_added,
        content_version=version,
    )
    return None if merged == local else merged


def merge_progress(local: ReadProgress | None, remote: RemoteBookmark) -> ReadProgress | None:
    """Return the read progress to store, or None to keep ``local`` as is.

    A pending local change whose value matches the server is left pending;
    the push will settle it. A differing pending change is a conflict.
    Without a pending change the server's read state is adopted unless it
    is older than what we hold.
    """
    if remote.read_progress is None:
        return None
    remote_percent = _clamp(remote.read_progress)
    remote_time = remote.read_updated_at or remote.remote_updated_at

    if local is None:
        return ReadProgress(
            bookmark_id=remote.id,
            scroll_percent=remote_percent,
            last_read_at=remote_time,
            pending_push=False,
        )

    if math.isclose(local.scroll_percent, remote_percent):
        return None

    if local.pending_push:
        resolved = resolve_progress_conflict(local, remote_percent, remote_time)
        return None if resolved is local else resolved

    if remote_time < local.last_read_at:
        return None
    return ReadProgress(
        bookmark_id=local.bookmark_id,
        scroll_percent=remote_percent,
        last_read_at=remote_time,
        pending_push=False,
    )


def diff_bookmark(
    local: Bookmark | None, local_progress: ReadProgress | None, remote: RemoteBookmark
) -> BookmarkDiff:
    return BookmarkDiff(
        bookmark=merge_bookmark(local, remote),
        progress=merge_progress(local_progress, remote),
    )
