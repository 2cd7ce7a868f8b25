"""
connection.py - SQLite connection management for the entity store.

Handles connection creation, PRAGMA configuration and integrity checks.
File-backed stores use WAL mode so readers never see a half-applied batch.
"""

import logging
import sqlite3

from aac_sync.config import SQLITE_PRAGMAS
from aac_sync.errors import PersistenceError

logger = logging.getLogger(__name__)


def create_connection(db_path: str) -> sqlite3.Connection:
    """
    Create a new SQLite connection with proper configuration.

    Args:
        db_path: Path to SQLite database file, or ":memory:"

    Returns:
        Configured sqlite3.Connection

    Raises:
        PersistenceError: If connection fails
    """
    try:
        conn = sqlite3.connect(
            db_path,
            isolation_level=None,  # Manual transaction control
            check_same_thread=False,
        )
    except sqlite3.Error as e:
        raise PersistenceError(
            f"Failed to open entity store: {e}",
            operation="connect",
        ) from e

    conn.row_factory = sqlite3.Row
    _apply_pragmas(conn, in_memory=db_path == ":memory:")
    return conn


def _apply_pragmas(conn: sqlite3.Connection, in_memory: bool = False) -> None:
    for pragma, value in SQLITE_PRAGMAS.items():
        if in_memory and pragma == "journal_mode":
            continue
        try:
            conn.execute(f"PRAGMA {pragma} = {value}")
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to set PRAGMA {pragma}: {e}",
                operation="pragma",
            ) from e


def verify_integrity(conn: sqlite3.Connection) -> bool:
    try:
        result = conn.execute("PRAGMA integrity_check").fetchone()
        return result is not None and result[0] == "ok"
    except sqlite3.Error:
        return False
