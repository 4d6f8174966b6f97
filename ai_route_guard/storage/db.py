"""
Database connection management.

Provides SQLite connection for ledger, retry queue and execution history.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_route_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=10)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def to_db_time(moment) -> str:
    """Fixed-width ISO timestamp so string order matches time order."""
    return moment.isoformat(timespec="microseconds")
