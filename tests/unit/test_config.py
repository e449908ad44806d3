"""Tests for settings loading."""

import json
from pathlib import Path

import pytest

from pocket_ding import config
from pocket_ding.config import DEFAULT_SYNC_INTERVAL, load_settings


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("POCKET_DING_URL", raising=False)
    monkeypatch.delenv("POCKET_DING_TOKEN", raising=False)
    monkeypatch.setattr(config, "API_TOKEN_FILES", [tmp_path / "no-token.txt"])


def test_loads_settings_file(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text(
        json.dumps({"base_url": "https://links.example.com", "token": "t", "sync_interval": 600})
    )

    settings = load_settings(tmp_path)

    assert settings.base_url == "https://links.example.com"
    assert settings.token == "t"
    assert settings.sync_interval == 600
    assert settings.auto_sync is True


def test_environment_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "settings.json").write_text(json.dumps({"base_url": "https://old", "token": "old"}))
    monkeypatch.setenv("POCKET_DING_URL", "https://new")
    monkeypatch.setenv("POCKET_DING_TOKEN", "new")

    settings = load_settings(tmp_path)

    assert (settings.base_url, settings.token) == ("https://new", "new")
    assert settings.sync_interval == DEFAULT_SYNC_INTERVAL


def test_token_falls_back_to_token_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    token_file = tmp_path / "token.txt"
    token_file.write_text("from-file\n")
    monkeypatch.setattr(config, "API_TOKEN_FILES", [token_file])
    monkeypatch.setenv("POCKET_DING_URL", "https://links.example.com")

    assert load_settings(tmp_path).token == "from-file"


def test_missing_url_raises(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError, match="No server URL"):
        load_settings(tmp_path)


def test_missing_token_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POCKET_DING_URL", "https://links.example.com")
    with pytest.raises(RuntimeError, match="Cannot find API token"):
        load_settings(tmp_path)
