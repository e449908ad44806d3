"""CLI for pocket-ding (sync, list, read, progress, backup)."""

import json
import time
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger

from pocket_ding.api import LinkdingApi
from pocket_ding.config import (
    APP_VERSION,
    BUILD_TIMESTAMP,
    Settings,
    load_settings,
    resolve_data_directory,
)
from pocket_ding.core.cache.content_cache import ContentCache
from pocket_ding.core.progress import ReadProgressTracker
from pocket_ding.core.store.local_store import LocalStore
from pocket_ding.core.sync.auto_sync import AutoSyncer
from pocket_ding.core.sync.engine import SyncEngine, queue_progress
from pocket_ding.core.version_guard import VersionGuard, VersionStatus
from pocket_ding.errors import NotFound
from pocket_ding.export import export_to_file, import_from_file
from pocket_ding.logging_config import configure_logging
from pocket_ding.models.bookmark import BookmarkFilter, VersionInfo
from pocket_ding.worker import REQUEST_SYNC, BackgroundWorker, WorkerChannel

app = typer.Typer(help="pocket-ding: offline reading for your Linkding bookmarks.")

DataDirOption = Annotated[
    Path | None,
    typer.Option("--data-dir", "-d", help="Directory holding the store and the content cache"),
]


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    configure_logging(verbose=verbose)


def _data_dir(data_dir: Path | None) -> Path:
    dst = data_dir or resolve_data_directory()
    dst.mkdir(parents=True, exist_ok=True)
    return dst


def _open_store(data_dir: Path) -> LocalStore:
    return LocalStore.open(data_dir / "store.db")


def _open_cache(data_dir: Path) -> ContentCache:
    cache = ContentCache(data_dir / "cache")
    cache.recover()
    return cache


def _load_settings(data_dir: Path) -> Settings:
    try:
        return load_settings(data_dir)
    except RuntimeError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e


@app.command()
def sync(
    full: bool = typer.Option(False, "--full", "-f", help="Pull everything and drop deleted bookmarks"),
    data_dir: DataDirOption = None,
) -> None:
    """Synchronize bookmarks, content and read progress with the server."""
    dst = _data_dir(data_dir)
    store = _open_store(dst)
    cache = _open_cache(dst)
    try:
        engine = SyncEngine(store, LinkdingApi.from_settings(_load_settings(dst)), cache)
        result = engine.run_full_sync() if full else engine.run_incremental_sync()
        if not result.success:
            typer.echo(f"Sync failed: {result.reason}")
            for error in result.errors:
                typer.echo(f"  {error}")
            raise typer.Exit(1)
        typer.echo(
            f"Pulled {result.pulled}, updated {result.updated}, deleted {result.deleted}, "
            f"cached {result.cached}, pushed {result.pushed}"
        )
        for error in result.errors:
            typer.echo(f"  warning: {error}")
    finally:
        cache.close()
        store.close()


@app.command(name="list")
def list_cmd(
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Only bookmarks with any of these tags"),
    ] = None,
    read_status: str = typer.Option("all", "--status", "-s", help="all, read or unread"),
    archived: str = typer.Option("unarchived", "--archived", "-a", help="all, archived or unarchived"),
    data_dir: DataDirOption = None,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List bookmarks from the local store."""
    try:
        flt = BookmarkFilter(tags=tuple(tag or ()), read_status=read_status, archived_status=archived)
    except ValueError as e:
        typer.echo(str(e))
        raise typer.Exit(2) from e

    dst = _data_dir(data_dir)
    store = _open_store(dst)
    cache = _open_cache(dst)
    try:
        bookmarks = store.list_all(flt)
        progress = {p.bookmark_id: p for p in store.list_progress()}
        cached = cache.cached_bookmark_ids()

        if output_json:
            data = [
                {
                    "id": b.id,
                    "title": b.title,
                    "url": b.url,
                    "tags": list(b.tags),
                    "unread": b.unread,
                    "progress": progress[b.id].scroll_percent if b.id in progress else None,
                    "offline": b.id in cached,
                }
                for b in bookmarks
            ]
            typer.echo(json.dumps(data, indent=2))
            return

        typer.echo(f"{len(bookmarks)} bookmarks:\n")
        for b in bookmarks:
            marker = "*" if b.id in cached else " "
            percent = f"{progress[b.id].scroll_percent:5.1f}%" if b.id in progress else "     -"
            typer.echo(f" {marker} {b.id:>6} {percent}  {b.title or b.url}")
    finally:
        cache.close()
        store.close()


@app.command()
def read(
    bookmark_id: int = typer.Argument(..., help="Bookmark ID to read"),
    data_dir: DataDirOption = None,
) -> None:
    """Print the cached content of a bookmark. Works offline."""
    dst = _data_dir(data_dir)
    store = _open_store(dst)
    cache = _open_cache(dst)
    try:
        try:
            bookmark = store.require(bookmark_id)
        except NotFound as e:
            typer.echo(str(e))
            raise typer.Exit(1) from e
        with cache.reading(bookmark_id) as entry:
            if entry is None:
                typer.echo(f"'{bookmark.title or bookmark.url}' is not available offline.")
                raise typer.Exit(1)
            typer.echo(cache.read(entry).decode("utf-8", errors="replace"))
    finally:
        cache.close()
        store.close()


@app.command()
def progress(
    bookmark_id: int = typer.Argument(..., help="Bookmark ID"),
    percent: Annotated[
        float | None,
        typer.Argument(help="Read position in percent (0-100)"),
    ] = None,
    done: bool = typer.Option(False, "--done", help="Mark the bookmark as fully read"),
    data_dir: DataDirOption = None,
) -> None:
    """Show or record read progress. Recorded progress is pushed on the next sync."""
    dst = _data_dir(data_dir)
    store = _open_store(dst)
    try:
        if percent is None and not done:
            current = store.get_progress(bookmark_id)
            if current is None:
                typer.echo(f"No read progress for bookmark {bookmark_id}.")
            else:
                pending = " (not yet pushed)" if current.pending_push else ""
                typer.echo(
                    f"{current.scroll_percent:.1f}% at {current.last_read_at:%Y-%m-%d %H:%M}{pending}"
                )
            return

        tracker = ReadProgressTracker(partial(queue_progress, store))
        try:
            if done or percent is None:
                recorded = tracker.mark_read(bookmark_id)
            else:
                recorded = tracker.record_percent(bookmark_id, percent)
        except (NotFound, ValueError) as e:
            typer.echo(str(e))
            raise typer.Exit(1) from e
        typer.echo(f"Recorded {recorded.scroll_percent:.1f}% for bookmark {bookmark_id}.")
    finally:
        store.close()


@app.command()
def status(
    data_dir: DataDirOption = None,
    check: bool = typer.Option(False, "--check", "-c", help="Also test the server connection"),
) -> None:
    """Show sync and cache status."""
    dst = _data_dir(data_dir)
    settings = _load_settings(dst) if check else None
    store = _open_store(dst)
    cache = _open_cache(dst)
    try:
        cursor = store.get_cursor()
        last = f"{cursor.last_synced_at:%Y-%m-%d %H:%M:%S}" if cursor.last_synced_at else "never"
        typer.echo(f"Last sync:      {last}")
        typer.echo(f"Cursor:         {cursor.token or '-'}")
        typer.echo(f"Bookmarks:      {len(store.list_ids())}")
        typer.echo(f"Offline:        {len(cache.cached_bookmark_ids())}")
        typer.echo(f"Pending pushes: {len(store.list_pending_progress())}")
        if settings is not None:
            reachable = LinkdingApi.from_settings(settings).test_connection()
            typer.echo(f"Server:         {'reachable' if reachable else 'unreachable'}")
            if not reachable:
                raise typer.Exit(1)
    finally:
        cache.close()
        store.close()


@app.command(name="version-check")
def version_check(
    worker_build: Annotated[
        str | None,
        typer.Option("--worker-build", help="Build timestamp to start the worker with"),
    ] = None,
) -> None:
    """Start a background worker and compare its build with this shell's."""
    shell = VersionInfo(version=APP_VERSION, build_timestamp=BUILD_TIMESTAMP)
    worker = BackgroundWorker(
        None,
        VersionInfo(version=APP_VERSION, build_timestamp=worker_build or BUILD_TIMESTAMP),
    )
    worker.start()
    try:
        check = VersionGuard(shell, WorkerChannel(worker)).check()
    finally:
        worker.stop(timeout=5)

    typer.echo(f"Shell:  {shell.version} ({shell.build_timestamp})")
    if check.worker is not None:
        typer.echo(f"Worker: {check.worker.version} ({check.worker.build_timestamp})")
    typer.echo(f"Status: {check.status}")
    if check.status is VersionStatus.MISMATCH:
        typer.echo("The background worker is from a different build; reload to update it.")
        raise typer.Exit(1)


@app.command()
def daemon(
    data_dir: DataDirOption = None,
    poll: float = typer.Option(60.0, "--poll", help="Seconds between auto-sync checks"),
) -> None:
    """Run the background worker with periodic auto sync until interrupted."""
    dst = _data_dir(data_dir)
    settings = _load_settings(dst)
    store = _open_store(dst)
    cache = _open_cache(dst)
    engine = SyncEngine(store, LinkdingApi.from_settings(settings), cache)
    worker = BackgroundWorker(engine)
    syncer = AutoSyncer(engine, settings, poll_interval=poll)
    worker.start()
    worker.post({"type": REQUEST_SYNC, "full_sync": store.get_cursor().token is None})
    syncer.start()
    typer.echo(f"Running (sync every {settings.sync_interval}s), Ctrl-C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        typer.echo("Stopping...")
    finally:
        syncer.stop(timeout=5)
        worker.stop(timeout=30)
        cache.close()
        store.close()


@app.command(name="export")
def export_cmd(
    output: Annotated[
        Path | None,
        typer.Argument(help="Output file (default: pocket-ding-export-<timestamp>.json)"),
    ] = None,
    data_dir: DataDirOption = None,
) -> None:
    """Export reading progress and app settings to a JSON file."""
    dst = _data_dir(data_dir)
    if output is None:
        output = Path(f"pocket-ding-export-{datetime.now(UTC):%Y-%m-%dT%H-%M-%S}.json")
    store = _open_store(dst)
    try:
        count = export_to_file(store, dst, output)
    finally:
        store.close()
    typer.echo(f"Exported {count} progress records to {output}")


@app.command(name="import")
def import_cmd(
    source: Path = typer.Argument(..., help="Export file to import"),
    data_dir: DataDirOption = None,
) -> None:
    """Import reading progress newer than what is stored locally."""
    dst = _data_dir(data_dir)
    store = _open_store(dst)
    try:
        result = import_from_file(store, dst, source)
    finally:
        store.close()
    typer.echo(
        f"Imported {result.imported}, skipped {result.skipped}, orphaned {result.orphaned}"
    )
    for error in result.errors:
        typer.echo(f"  {error}")
    if not result.success:
        raise typer.Exit(1)
