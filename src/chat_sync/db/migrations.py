"""
migrations.py - Database initialization and schema management.

Handles creation of the chat tables and the schema version record.
"""

import sqlite3
import uuid

from chat_sync.db.schema import ALL_SCHEMA_STATEMENTS
from chat_sync.errors import LocalStorageError, SchemaError
from chat_sync.config import SCHEMA_VERSION, METADATA_KEY_APP_ID, METADATA_KEY_SCHEMA_VERSION


def initialize_tables(conn: sqlite3.Connection) -> int:
    """
    Create all chat tables, record the schema version and generate
    the installation app id.

    This is idempotent: can be called multiple times safely.
    If already initialized, verifies the stored schema version.

    Args:
        conn: SQLite connection

    Returns:
        Schema version of the database

    Raises:
        LocalStorageError: If schema creation fails
        SchemaError: If schema version mismatch detected
    """
    existing = _get_existing_schema_version(conn)
    if existing is not None:
        if existing != SCHEMA_VERSION:
            raise SchemaError(
                "Schema version mismatch",
                expected=SCHEMA_VERSION,
                actual=existing,
            )
        _ensure_app_id(conn)
        return existing

    try:
        for statement in ALL_SCHEMA_STATEMENTS:
            # Split multi-statement strings
            for sql in statement.strip().split(";"):
                sql = sql.strip()
                if sql:
                    conn.execute(sql)
        conn.execute(
            "INSERT INTO chat_metadata (key, value) VALUES (?, ?)",
            (METADATA_KEY_SCHEMA_VERSION, str(SCHEMA_VERSION)),
        )
        _ensure_app_id(conn)
    except sqlite3.Error as e:
        raise LocalStorageError(
            f"Failed to create chat tables: {e}",
            operation="create_tables",
        ) from e

    return SCHEMA_VERSION


def _ensure_app_id(conn: sqlite3.Connection) -> None:
    # Never replaces an existing id
    conn.execute(
        "INSERT OR IGNORE INTO chat_metadata (key, value) VALUES (?, ?)",
        (METADATA_KEY_APP_ID, str(uuid.uuid4())),
    )


def _get_existing_schema_version(conn: sqlite3.Connection) -> int | None:
    try:
        row = conn.execute(
            "SELECT value FROM chat_metadata WHERE key = ?",
            (METADATA_KEY_SCHEMA_VERSION,),
        ).fetchone()
    except sqlite3.OperationalError:
        # Table doesn't exist
        return None
    if row is None:
        return None
    return int(row[0])


def get_schema_version(conn: sqlite3.Connection) -> int:
    """
    Get the schema version for this database.

    Raises:
        SchemaError: If not initialized
    """
    version = _get_existing_schema_version(conn)
    if version is None:
        raise SchemaError("Database not initialized: schema_version not found")
    return version
