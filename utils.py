"""
Shared helpers: where the ledger keeps its files, which database it talks to,
and what time it is in the ledger's calendar.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy.engine import make_url

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent
DEFAULT_DATA_DIR = "data"
DEFAULT_DB_FILE = "account_app.db"
CONNECTION_ENV_VAR = "DB_CONNECTION_STRING"


def get_project_root() -> Path:
    return PROJECT_ROOT


def _under_root(path_value: str | Path) -> Path:
    """Anchor a relative path at the project root; absolute paths pass through."""
    path = Path(path_value)
    return path if path.is_absolute() else PROJECT_ROOT / path


def _mkdir(directory: Path, what: str) -> Path:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Cannot create %s '%s': %s", what, directory, exc)
        raise
    return directory


def get_data_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    """Return the configured data directory (not created)."""
    database = (config or {}).get("database", {})
    return _under_root(database.get("data_dir", DEFAULT_DATA_DIR))


def ensure_data_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    """Create the data directory when missing and return it."""
    return _mkdir(get_data_dir(config), "data directory")


def _prepare_sqlite_file(connection_string: str) -> str:
    """Make sure the directory of a file-backed SQLite URL exists."""
    url = make_url(connection_string)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        _mkdir(_under_root(url.database).parent, "database directory")
    return connection_string


def resolve_connection_string(config: Optional[Dict[str, Any]] = None) -> str:
    """
    Pick the database URL.

    DB_CONNECTION_STRING wins, then database.connection_string, then a SQLite
    file named database.path inside the data directory.

    Args:
        config: Configuration dictionary (may be None)

    Returns:
        SQLAlchemy connection string
    """
    from_env = os.environ.get(CONNECTION_ENV_VAR)
    if from_env:
        return _prepare_sqlite_file(from_env)

    database = (config or {}).get("database", {})
    if database.get("connection_string"):
        return _prepare_sqlite_file(database["connection_string"])

    db_file = Path(database.get("path", DEFAULT_DB_FILE))
    if not db_file.is_absolute():
        db_file = ensure_data_dir(config) / db_file
    return _prepare_sqlite_file(f"sqlite:///{db_file.as_posix()}")


def resolve_log_path(log_path: str) -> Path:
    """Resolve the log file location and create its directory."""
    resolved = _under_root(log_path)
    _mkdir(resolved.parent, "log directory")
    return resolved


def current_time(utc_offset_minutes: Optional[int] = None) -> datetime:
    """
    Return the ledger's notion of "now" as a naive civil datetime.

    The whole deployment uses one fixed offset. With no offset configured the
    host's local time is used.
    """
    if utc_offset_minutes is None:
        return datetime.now()
    ledger_tz = timezone(timedelta(minutes=int(utc_offset_minutes)))
    return datetime.now(ledger_tz).replace(tzinfo=None)


def parse_int(value: Any) -> Optional[int]:
    """
    Leniently convert a query value to int.

    Returns None for None, blank strings, booleans and anything int() rejects.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None
