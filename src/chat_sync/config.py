"""
config.py - Configuration constants for chat_sync.

All configuration is immutable and defined at module level.
No mutable global state is permitted.
"""

from typing import Final

# Schema version for the local chat tables
# Increment this when the table schema changes
SCHEMA_VERSION: Final[int] = 1

# SQLite PRAGMA settings for the device database
# These ensure durability and consistency
SQLITE_PRAGMAS: Final[dict[str, str]] = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "foreign_keys": "ON",
    "busy_timeout": "5000",
}

# Bounded wait for the download half of a sync, measured from upload completion
SYNC_TIMEOUT_SECONDS: Final[float] = 10.0

# Period of the background sync loop
SYNC_INTERVAL_SECONDS: Final[float] = 60.0

# Hard wall-clock deadline for a registration attempt
REGISTRATION_DEADLINE_SECONDS: Final[float] = 180.0

# Timeout for the unary registration HTTP call
REGISTRATION_HTTP_TIMEOUT_SECONDS: Final[float] = 30.0

# Chatroom every device joins at registration
DEFAULT_CHATROOM: Final[str] = "_default"

# Key of the singleton watermark row
WATERMARK_ID: Final[int] = 1

# Metadata keys used in the chat_metadata table
METADATA_KEY_SCHEMA_VERSION: Final[str] = "schema_version"
METADATA_KEY_APP_ID: Final[str] = "app_id"
METADATA_KEY_CHAT_NAME: Final[str] = "chat_name"
METADATA_KEY_SERVER_URI: Final[str] = "server_uri"

# Application headers attached to every request sent to the server
HEADER_APP_ID: Final[str] = "X-App-Id"
HEADER_CHAT_NAME: Final[str] = "X-Chat-Name"

# Server endpoints, relative to the registered server address
REGISTER_PATH: Final[str] = "/chat/register"
SYNC_PATH: Final[str] = "/chat/sync"
HEALTH_PATH: Final[str] = "/chat/health"

# Environment variables
ENV_DB_PATH: Final[str] = "CHAT_SYNC_DB_PATH"
ENV_RELAY_ID: Final[str] = "CHAT_SYNC_RELAY_ID"

DEFAULT_DB_PATH: Final[str] = "chat_sync.db"
