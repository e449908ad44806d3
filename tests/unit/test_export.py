"""Tests for export and import of reading progress."""

import json
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from pocket_ding.core.store.local_store import LocalStore
from pocket_ding.export import (
    EXPORT_VERSION,
    export_data,
    export_to_file,
    import_data,
    import_from_file,
    validate_export_data,
)
from pocket_ding.models.bookmark import ReadProgress
from tests.unit.fakes import T0, make_bookmark

LATER = T0 + timedelta(hours=1)


def _write_settings(data_dir: Path, **values: Any) -> Path:
    path = data_dir / "settings.json"
    path.write_text(json.dumps({"base_url": "https://links.example.com", "token": "t", **values}))
    return path


def _document(*entries: dict[str, Any], settings: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "version": EXPORT_VERSION,
        "export_timestamp": LATER.isoformat(),
        "reading_progress": list(entries),
        "app_settings": settings or {},
    }


def _entry(bookmark_id: int, progress: float, at: str) -> dict[str, Any]:
    return {"bookmark_id": bookmark_id, "progress": progress, "last_read_at": at}


@pytest.fixture
def seeded(store: LocalStore) -> LocalStore:
    store.upsert(make_bookmark(1))
    store.upsert(make_bookmark(2))
    store.set_progress(1, ReadProgress(bookmark_id=1, scroll_percent=40.0, last_read_at=T0))
    return store


def test_export_contains_progress_and_non_default_settings(seeded: LocalStore, tmp_path: Path) -> None:
    _write_settings(tmp_path, sync_interval=600, auto_sync=True)

    data = export_data(seeded, tmp_path, now=LATER)

    assert data == {
        "version": "1.0",
        "export_timestamp": LATER.isoformat(),
        "reading_progress": [_entry(1, 40.0, T0.isoformat())],
        "app_settings": {"sync_interval": 600},
    }


def test_export_never_includes_credentials(seeded: LocalStore, tmp_path: Path) -> None:
    _write_settings(tmp_path, auto_sync=False)
    data = export_data(seeded, tmp_path)
    assert data["app_settings"] == {"auto_sync": False}
    assert "token" not in json.dumps(data)


def test_export_to_file_writes_json(seeded: LocalStore, tmp_path: Path) -> None:
    output = tmp_path / "backup.json"

    count = export_to_file(seeded, tmp_path, output)

    assert count == 1
    validate_export_data(json.loads(output.read_text()))


@pytest.mark.parametrize(
    "data",
    [
        [],
        {"version": "1.0"},
        _document({"bookmark_id": "1", "progress": 10, "last_read_at": "2024-01-01"}),
        _document(settings={"auto_sync": "yes"}),
    ],
)
def test_validate_rejects_bad_documents(data: Any) -> None:
    with pytest.raises(ValueError):
        validate_export_data(data)


def test_import_only_applies_strictly_newer_progress(seeded: LocalStore, tmp_path: Path) -> None:
    result = import_data(
        seeded,
        tmp_path,
        _document(
            _entry(1, 90.0, T0.isoformat()),
            _entry(2, 25.0, LATER.isoformat()),
            _entry(7, 50.0, LATER.isoformat()),
        ),
    )

    assert (result.imported, result.skipped, result.orphaned) == (1, 1, 1)
    assert result.success
    assert seeded.get_progress(1).scroll_percent == 40.0  # type: ignore[union-attr]
    imported = seeded.get_progress(2)
    assert imported is not None
    assert imported.scroll_percent == 25.0
    assert imported.pending_push is True


def test_import_treats_naive_timestamps_as_utc(seeded: LocalStore, tmp_path: Path) -> None:
    result = import_data(seeded, tmp_path, _document(_entry(1, 70.0, "2024-01-01T13:00:00")))

    assert result.imported == 1
    assert seeded.get_progress(1).last_read_at == LATER  # type: ignore[union-attr]


def test_import_merges_settings_and_keeps_server_config(seeded: LocalStore, tmp_path: Path) -> None:
    path = _write_settings(tmp_path, sync_interval=60)

    result = import_data(seeded, tmp_path, _document(settings={"sync_interval": 900, "auto_sync": False}))

    assert result.imported_settings
    merged = json.loads(path.read_text())
    assert merged == {
        "base_url": "https://links.example.com",
        "token": "t",
        "sync_interval": 900,
        "auto_sync": False,
    }


def test_import_settings_without_configured_server_is_an_error(
    seeded: LocalStore, tmp_path: Path
) -> None:
    result = import_data(seeded, tmp_path, _document(settings={"sync_interval": 900}))

    assert not result.success
    assert not result.imported_settings
    assert "settings" in result.errors[0]


def test_import_invalid_document_reports_error(seeded: LocalStore, tmp_path: Path) -> None:
    result = import_data(seeded, tmp_path, {"reading_progress": []})
    assert not result.success
    assert result.imported == 0


def test_import_from_unreadable_file(seeded: LocalStore, tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")

    assert not import_from_file(seeded, tmp_path, bad).success
    assert not import_from_file(seeded, tmp_path, tmp_path / "missing.json").success


def test_export_then_import_into_fresh_store(seeded: LocalStore, tmp_path: Path) -> None:
    backup = tmp_path / "backup.json"
    export_to_file(seeded, tmp_path, backup)

    fresh = LocalStore.open(tmp_path / "fresh.db")
    try:
        fresh.upsert(make_bookmark(1))
        result = import_from_file(fresh, tmp_path, backup)
        assert result.imported == 1
        assert fresh.get_progress(1).scroll_percent == 40.0  # type: ignore[union-attr]
    finally:
        fresh.close()
