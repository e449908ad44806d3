"""Backup and restore of reading progress and app settings."""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from pocket_ding.config import DEFAULT_SYNC_INTERVAL, SETTINGS_FILENAME
from pocket_ding.core.store.local_store import LocalStore
from pocket_ding.models.bookmark import ReadProgress

EXPORT_VERSION = "1.0"

_REQUIRED_KEYS = {"version", "export_timestamp", "reading_progress", "app_settings"}


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    orphaned: int = 0
    imported_settings: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _read_settings_file(data_dir: Path) -> dict[str, Any]:
    path = data_dir / SETTINGS_FILENAME
    if not path.exists():
        return {}
    return json.loads(path.read_text(encoding="utf-8"))


def export_data(store: LocalStore, data_dir: Path, *, now: datetime | None = None) -> dict[str, Any]:
    """Collect reading progress and non-default app settings.

    Server URL and token are never exported.
    """
    raw = _read_settings_file(data_dir)
    app_settings: dict[str, Any] = {}
    if raw.get("sync_interval", DEFAULT_SYNC_INTERVAL) != DEFAULT_SYNC_INTERVAL:
        app_settings["sync_interval"] = raw["sync_interval"]
    if raw.get("auto_sync", True) is not True:
        app_settings["auto_sync"] = raw["auto_sync"]

    return {
        "version": EXPORT_VERSION,
        "export_timestamp": (now or datetime.now(UTC)).isoformat(),
        "reading_progress": [
            {
                "bookmark_id": p.bookmark_id,
                "progress": p.scroll_percent,
                "last_read_at": p.last_read_at.isoformat(),
            }
            for p in store.list_progress()
        ],
        "app_settings": app_settings,
    }


def export_to_file(store: LocalStore, data_dir: Path, output: Path) -> int:
    """Write an export file. Returns the number of progress records written."""
    data = export_data(store, data_dir)
    output.write_text(json.dumps(data, sort_keys=True, indent=4) + "\n", encoding="utf-8")
    logger.info("Exported {} progress records to {}", len(data["reading_progress"]), output)
    return len(data["reading_progress"])


def validate_export_data(data: Any) -> None:
    """Check the shape of an export document.

    Raises:
        ValueError: If required fields are missing or have the wrong type.
    """
    if not isinstance(data, dict):
        msg = "export data must be a JSON object"
        raise ValueError(msg)
    missing = _REQUIRED_KEYS - data.keys()
    if missing:
        msg = f"bad export keys, missing {sorted(missing)!r}"
        raise ValueError(msg)
    if not isinstance(data["reading_progress"], list) or not isinstance(data["app_settings"], dict):
        msg = "reading_progress must be a list and app_settings an object"
        raise ValueError(msg)
    for item in data["reading_progress"]:
        if not (
            isinstance(item, dict)
            and isinstance(item.get("bookmark_id"), int)
            and isinstance(item.get("progress"), int | float)
            and isinstance(item.get("last_read_at"), str)
        ):
            msg = f"bad reading_progress entry: {item!r}"
            raise ValueError(msg)
    settings = data["app_settings"]
    if "sync_interval" in settings and not isinstance(settings["sync_interval"], int):
        msg = "app_settings.sync_interval must be an integer"
        raise ValueError(msg)
    if "auto_sync" in settings and not isinstance(settings["auto_sync"], bool):
        msg = "app_settings.auto_sync must be a boolean"
        raise ValueError(msg)


def _import_progress(store: LocalStore, item: dict[str, Any], result: ImportResult) -> None:
    bookmark_id = item["bookmark_id"]
    if store.get(bookmark_id) is None:
        result.orphaned += 1
        return

    last_read_at = datetime.fromisoformat(item["last_read_at"])
    if last_read_at.tzinfo is None:
        last_read_at = last_read_at.replace(tzinfo=UTC)
    incoming = ReadProgress(
        bookmark_id=bookmark_id,
        scroll_percent=float(item["progress"]),
        last_read_at=last_read_at,
        pending_push=True,
    )
    with store.record_lock(bookmark_id):
        existing = store.get_progress(bookmark_id)
        if existing is not None and incoming.last_read_at <= existing.last_read_at:
            result.skipped += 1
            return
        store.set_progress(bookmark_id, incoming)
    result.imported += 1


def _import_settings(data_dir: Path, settings: dict[str, Any]) -> None:
    """Merge imported settings into settings.json, keeping server configuration."""
    path = data_dir / SETTINGS_FILENAME
    if not path.exists():
        msg = f"No settings found at {path}; configure the server first"
        raise ValueError(msg)
    merged = {**_read_settings_file(data_dir), **settings}
    path.write_text(json.dumps(merged, sort_keys=True, indent=4) + "\n", encoding="utf-8")


def import_data(store: LocalStore, data_dir: Path, data: Any) -> ImportResult:
    """Restore progress that is newer than what the store holds.

    Entries for unknown bookmarks count as orphaned; entries not strictly
    newer than the stored progress count as skipped. Imported progress is
    queued for push.
    """
    result = ImportResult()
    try:
        validate_export_data(data)
    except ValueError as e:
        result.errors.append(f"Invalid export data: {e}")
        return result

    for item in data["reading_progress"]:
        try:
            _import_progress(store, item, result)
        except ValueError as e:
            result.errors.append(f"Failed to import progress for bookmark {item['bookmark_id']}: {e}")
            result.skipped += 1

    if data["app_settings"]:
        try:
            _import_settings(data_dir, data["app_settings"])
            result.imported_settings = True
        except (OSError, ValueError) as e:
            result.errors.append(f"Failed to import settings: {e}")

    logger.info(
        "Imported {} progress records, skipped {}, orphaned {}",
        result.imported, result.skipped, result.orphaned,
    )
    return result


def import_from_file(store: LocalStore, data_dir: Path, source: Path) -> ImportResult:
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        result = ImportResult()
        result.errors.append(f"Failed to read file: {e}")
        return result
    return import_data(store, data_dir, data)
