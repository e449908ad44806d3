"""Background cache worker: a message loop thread in front of the sync engine."""

import queue
import threading
from concurrent.futures import Future
from dataclasses import asdict
from typing import Any

from loguru import logger

from pocket_ding.config import APP_VERSION, BUILD_TIMESTAMP
from pocket_ding.core.sync.engine import SyncEngine
from pocket_ding.models.bookmark import VersionInfo

REQUEST_VERSION = "REQUEST_VERSION"
VERSION_INFO = "VERSION_INFO"
REQUEST_SYNC = "REQUEST_SYNC"
SYNC_COMPLETE = "SYNC_COMPLETE"
CANCEL_SYNC = "CANCEL_SYNC"
ERROR = "ERROR"

Message = dict[str, Any]

_STOP = object()


class BackgroundWorker:
    """Serve version and sync requests from a single worker thread.

    Sync requests run on the worker thread one after another. ``CANCEL_SYNC``
    is handled on the caller's thread so it can reach a running cycle. A
    worker without an engine only answers version requests.
    """

    def __init__(self, engine: SyncEngine | None, version: VersionInfo | None = None) -> None:
        self.engine = engine
        self.version = version or VersionInfo(version=APP_VERSION, build_timestamp=BUILD_TIMESTAMP)
        self._inbox: queue.Queue[Any] = queue.Queue()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._loop, name="cache-worker", daemon=True)
        self._thread.start()
        logger.debug("Worker started ({})", self.version.build_timestamp)

    def stop(self, timeout: float | None = None) -> None:
        if self._thread is None:
            return
        if self.engine is not None:
            self.engine.cancel()
        self._inbox.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def post(self, message: Message) -> "Future[Message]":
        """Queue a message. The returned future resolves with the reply."""
        reply: Future[Message] = Future()
        if message.get("type") == CANCEL_SYNC:
            cancelled = self.engine.cancel() if self.engine is not None else False
            reply.set_result({"type": CANCEL_SYNC, "cancelled": cancelled})
            return reply
        self._inbox.put((message, reply))
        return reply

    def _loop(self) -> None:
        while True:
            item = self._inbox.get()
            if item is _STOP:
                break
            message, reply = item
            if not reply.set_running_or_notify_cancel():
                continue
            try:
                reply.set_result(self.handle(message))
            except Exception as e:
                logger.exception("Worker failed handling {}", message.get("type"))
                reply.set_exception(e)

    def handle(self, message: Message) -> Message:
        kind = message.get("type")
        if kind == REQUEST_VERSION:
            return {"type": VERSION_INFO, "version": asdict(self.version)}
        if kind == REQUEST_SYNC and self.engine is not None:
            if message.get("full_sync"):
                result = self.engine.run_full_sync()
            else:
                result = self.engine.run_incremental_sync()
            return {"type": SYNC_COMPLETE, **asdict(result)}
        logger.warning("Worker cannot handle message: {!r}", message)
        return {"type": ERROR, "error": f"unsupported message type {kind!r}"}


class WorkerChannel:
    """Shell side of the worker connection.

    ``request`` returns None when no running worker is attached, so callers
    can tell "no worker" apart from "worker did not answer".
    """

    def __init__(self, worker: BackgroundWorker | None = None) -> None:
        self.worker = worker

    def request(self, message: Message) -> "Future[Message] | None":
        if self.worker is None or not self.worker.running:
            return None
        return self.worker.post(message)
