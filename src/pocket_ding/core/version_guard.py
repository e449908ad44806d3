"""Detect version skew between the shell and the background worker."""

import threading
from collections.abc import Callable
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger

from pocket_ding.config import VERSION_REQUEST_TIMEOUT
from pocket_ding.models.bookmark import VersionInfo
from pocket_ding.protocols import WorkerChannelProtocol

MismatchCallback = Callable[[VersionInfo, VersionInfo], None]


class VersionStatus(StrEnum):
    MATCH = "match"
    MISMATCH = "mismatch"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class VersionCheck:
    status: VersionStatus
    shell: VersionInfo
    worker: VersionInfo | None = None

    @property
    def is_mismatch(self) -> bool:
        return self.status is VersionStatus.MISMATCH


class VersionGuard:
    """Compare the shell build against the running worker's build.

    A worker that is absent or does not answer within ``timeout`` gives
    ``unknown``, which is never treated as a mismatch. ``on_mismatch`` fires
    once per detection window; the window closes on ``reset()`` or when the
    worker reports a different build timestamp.
    """

    def __init__(
        self,
        shell: VersionInfo,
        channel: WorkerChannelProtocol,
        *,
        timeout: float = VERSION_REQUEST_TIMEOUT,
        on_mismatch: MismatchCallback | None = None,
    ) -> None:
        self.shell = shell
        self.channel = channel
        self.timeout = timeout
        self.on_mismatch = on_mismatch
        self._lock = threading.Lock()
        self._notified_for: str | None = None

    def reset(self) -> None:
        with self._lock:
            self._notified_for = None

    def _request_worker_version(self) -> VersionInfo | None:
        future = self.channel.request({"type": "REQUEST_VERSION"})
        if future is None:
            logger.debug("No worker attached, version unknown")
            return None
        try:
            reply = future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.debug("Worker did not report its version within {}s", self.timeout)
            return None
        except Exception as e:
            logger.warning("Worker version request failed: {}", e)
            return None

        version = reply.get("version") if reply.get("type") == "VERSION_INFO" else None
        if not isinstance(version, dict) or "build_timestamp" not in version:
            logger.warning("Unexpected version reply from worker: {!r}", reply)
            return None
        return VersionInfo(
            version=str(version.get("version", "")),
            build_timestamp=str(version["build_timestamp"]),
        )

    def check(self) -> VersionCheck:
        worker = self._request_worker_version()
        if worker is None:
            return VersionCheck(status=VersionStatus.UNKNOWN, shell=self.shell)
        if worker.build_timestamp == self.shell.build_timestamp:
            return VersionCheck(status=VersionStatus.MATCH, shell=self.shell, worker=worker)

        with self._lock:
            first = self._notified_for != worker.build_timestamp
            self._notified_for = worker.build_timestamp
        logger.info(
            "Version mismatch: shell {} vs worker {}",
            self.shell.build_timestamp, worker.build_timestamp,
        )
        if first and self.on_mismatch is not None:
            self.on_mismatch(self.shell, worker)
        return VersionCheck(status=VersionStatus.MISMATCH, shell=self.shell, worker=worker)
