"""File path resolution using platformdirs.

Persistent state (SQLite database, generated credential key) lives in the
platform user data directory:
  macOS: ~/Library/Application Support/hns-sync/
  Linux: ~/.local/share/hns-sync/
  Windows: %LOCALAPPDATA%/hns-sync/
"""

from pathlib import Path

import platformdirs

APP_NAME = "hns-sync"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, key file)."""
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    data = get_data_dir()
    data.mkdir(parents=True, exist_ok=True)
    return data / "hns-sync.db"
