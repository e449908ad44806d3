"""Configuration constants and settings for pocket-ding."""

import json
import os
from dataclasses import dataclass
from pathlib import Path

# API token location. First file found is used.
API_TOKEN_FILES: list[Path] = [
    Path("~/.config/pocket-ding-token.txt").expanduser(),
    Path("~/.config/secret/pocket-ding-token.txt").expanduser(),
    Path(f"/run/user/{os.getuid()}/pocket-ding-token"),
]

# Directory with data. First directory which is found is used.
DATA_DIRECTORIES: list[Path] = [
    Path("~/.local/share/pocket-ding").expanduser(),
    Path("~/.pocket-ding").expanduser(),
]

SETTINGS_FILENAME = "settings.json"

# Minimum seconds between automatic syncs.
DEFAULT_SYNC_INTERVAL: int = 60 * 60

# Seconds to wait for the background worker to report its version.
VERSION_REQUEST_TIMEOUT: float = 2.0

# Remote call retry policy.
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_BASE_DELAY: float = 1.0
DEFAULT_MAX_DELAY: float = 30.0
DEFAULT_JITTER: float = 0.1
REQUEST_TIMEOUT: float = 30.0

# Cap for per-bookmark push backoff and cycle backoff, in seconds.
MAX_BACKOFF: float = 15 * 60

# Non-current cache entries kept per bookmark.
CACHE_RETENTION: int = 1

# Parallel content downloads during the caching phase.
CONTENT_FETCH_WORKERS: int = 4

APP_VERSION = "0.1.0"

# Build stamp of this shell; set by the packaging step.
BUILD_TIMESTAMP: str = os.environ.get("POCKET_DING_BUILD_TIMESTAMP", "dev")


@dataclass(frozen=True)
class Settings:
    """User settings for the remote service."""

    base_url: str
    token: str
    sync_interval: int = DEFAULT_SYNC_INTERVAL
    auto_sync: bool = True


def resolve_data_directory() -> Path:
    """Return the first existing data directory, or the preferred one."""
    for candidate in DATA_DIRECTORIES:
        if candidate.is_dir():
            return candidate
    return DATA_DIRECTORIES[0]


def read_api_token() -> str | None:
    """Read the API token from the first token file found."""
    for token_path in API_TOKEN_FILES:
        try:
            return token_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            pass
    return None


def load_settings(data_dir: Path) -> Settings:
    """Load settings from ``settings.json``, applying environment overrides.

    ``POCKET_DING_URL`` and ``POCKET_DING_TOKEN`` take precedence over the file.
    The token falls back to the token files in ``API_TOKEN_FILES``.

    Raises:
        RuntimeError: If no server URL or no token can be found.
    """
    raw: dict[str, object] = {}
    settings_path = data_dir / SETTINGS_FILENAME
    if settings_path.exists():
        raw = json.loads(settings_path.read_text(encoding="utf-8"))

    base_url = os.environ.get("POCKET_DING_URL") or raw.get("base_url")
    token = os.environ.get("POCKET_DING_TOKEN") or raw.get("token") or read_api_token()
    if not base_url:
        msg = f"No server URL configured (set POCKET_DING_URL or base_url in {settings_path})"
        raise RuntimeError(msg)
    if not token:
        msg = f"Cannot find API token, was looking at {API_TOKEN_FILES!r}"
        raise RuntimeError(msg)

    return Settings(
        base_url=str(base_url),
        token=str(token),
        sync_interval=int(raw.get("sync_interval", DEFAULT_SYNC_INTERVAL)),  # type: ignore[arg-type]
        auto_sync=bool(raw.get("auto_sync", True)),
    )
