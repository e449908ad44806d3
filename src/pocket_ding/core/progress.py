"""Scroll-based read progress."""

import math
from collections.abc import Callable
from datetime import UTC, datetime

from pocket_ding.models.bookmark import ReadProgress
from pocket_ding.protocols import ProgressSink


def compute_progress(scroll_top: float, scroll_height: float, client_height: float) -> float:
    """Convert a scroll position into a read percentage in ``[0, 100]``.

    Content that fits in the viewport (including the all-zero case) has
    nothing left to scroll and counts as fully read.

    Raises:
        ValueError: On negative or non-finite input.
    """
    for name, value in (
        ("scroll_top", scroll_top),
        ("scroll_height", scroll_height),
        ("client_height", client_height),
    ):
        if not math.isfinite(value) or value < 0:
            msg = f"{name} must be finite and non-negative, got {value!r}"
            raise ValueError(msg)

    scrollable = scroll_height - client_height
    if scrollable <= 0:
        return 100.0
    return min(max(scroll_top / scrollable * 100, 0.0), 100.0)


class ReadProgressTracker:
    """Turn reader events into pending read progress.

    Each recorded position is handed to ``sink`` (normally
    ``SyncEngine.enqueue_local_change``) flagged for push.
    """

    def __init__(
        self,
        sink: ProgressSink,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._sink = sink
        self._clock = clock

    def record_scroll(
        self,
        bookmark_id: int,
        *,
        scroll_top: float,
        scroll_height: float,
        client_height: float,
    ) -> ReadProgress:
        percent = compute_progress(scroll_top, scroll_height, client_height)
        return self.record_percent(bookmark_id, percent)

    def record_percent(self, bookmark_id: int, percent: float) -> ReadProgress:
        progress = ReadProgress(
            bookmark_id=bookmark_id,
            scroll_percent=percent,
            last_read_at=self._clock(),
            pending_push=True,
        )
        self._sink(bookmark_id, progress)
        return progress

    def mark_read(self, bookmark_id: int) -> ReadProgress:
        return self.record_percent(bookmark_id, 100.0)
