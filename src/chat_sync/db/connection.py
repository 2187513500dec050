"""
connection.py - SQLite database connection management.

Handles connection creation, PRAGMA configuration and
transaction execution.

All connections use WAL mode for concurrent read/write.
"""

import logging
import sqlite3
from typing import Callable, Any

from chat_sync.config import SQLITE_PRAGMAS
from chat_sync.errors import LocalStorageError

logger = logging.getLogger(__name__)


def create_connection(db_path: str) -> sqlite3.Connection:
    """
    Create a new SQLite connection with proper configuration.

    Rows are returned as sqlite3.Row so they can be fed straight
    into the entity codec.

    Args:
        db_path: Path to SQLite database file (or ":memory:")

    Returns:
        Configured sqlite3.Connection

    Raises:
        LocalStorageError: If connection fails
    """
    try:
        conn = sqlite3.connect(
            db_path,
            isolation_level=None,  # Manual transaction control
            check_same_thread=False,
        )
    except sqlite3.Error as e:
        raise LocalStorageError(
            f"Failed to connect to database: {e}",
            operation="connect",
        ) from e

    conn.row_factory = sqlite3.Row
    _apply_pragmas(conn)
    logger.debug("Opened database %s", db_path)
    return conn


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    for pragma, value in SQLITE_PRAGMAS.items():
        try:
            conn.execute(f"PRAGMA {pragma} = {value}")
        except sqlite3.Error as e:
            raise LocalStorageError(
                f"Failed to set PRAGMA {pragma}: {e}",
                operation="pragma",
                sql=f"PRAGMA {pragma} = {value}",
            ) from e


def execute_in_transaction(
    conn: sqlite3.Connection,
    operation: Callable[[sqlite3.Connection], Any]
) -> Any:
    """
    Execute an operation within an IMMEDIATE transaction.

    Ensures atomicity: all changes commit or all rollback.
    Non-SQLite exceptions raised by the operation roll back and
    propagate unchanged.

    Args:
        conn: SQLite connection
        operation: Callable that performs database operations

    Returns:
        Result of operation

    Raises:
        LocalStorageError: If the transaction fails in SQLite
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            result = operation(conn)
            conn.execute("COMMIT")
            return result
        except Exception:
            conn.execute("ROLLBACK")
            raise
    except sqlite3.Error as e:
        raise LocalStorageError(
            f"Transaction failed: {e}",
            operation="transaction",
        ) from e


def verify_integrity(conn: sqlite3.Connection) -> bool:
    """
    Run SQLite integrity check.

    Returns:
        True if database is healthy
    """
    try:
        result = conn.execute("PRAGMA integrity_check").fetchone()
        return result is not None and result[0] == "ok"
    except sqlite3.Error:
        return False
