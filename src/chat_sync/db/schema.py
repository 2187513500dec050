"""
schema.py - Local chat table schema definitions.

All tables use STRICT mode for type enforcement. Timestamps are
INTEGER Unix microseconds, UUIDs are TEXT.
"""

from typing import Final

# chatroom table - one row per known chatroom, keyed by name
CHATROOM_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS chatroom (
    name TEXT PRIMARY KEY CHECK(length(name) > 0)
) STRICT;
"""

# peer table - last sighting of every known peer
PEER_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS peer (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE CHECK(length(name) > 0),
    timestamp INTEGER NOT NULL,
    latitude REAL,
    longitude REAL
) STRICT;
"""

# message table - own and downloaded messages
# seq_num = 0: authored here, not yet acknowledged by the server
MESSAGE_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS message (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chatroom TEXT NOT NULL REFERENCES chatroom(name),
    text TEXT NOT NULL,
    seq_num INTEGER NOT NULL DEFAULT 0 CHECK(seq_num >= 0),
    app_id TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    latitude REAL,
    longitude REAL,
    sender TEXT NOT NULL
) STRICT;
"""

MESSAGE_INDICES: Final[str] = """
-- Outbound queue and ordering
CREATE INDEX IF NOT EXISTS idx_message_seq ON message(seq_num);

-- Messages by sender (peer name)
CREATE INDEX IF NOT EXISTS idx_message_sender ON message(sender);

-- A settled message is stored at most once
CREATE UNIQUE INDEX IF NOT EXISTS idx_message_settled
ON message(app_id, seq_num) WHERE seq_num > 0;
"""

# watermark table - singleton row (id = 1)
WATERMARK_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS watermark (
    id INTEGER PRIMARY KEY CHECK(id = 1),
    last_seq_num INTEGER NOT NULL CHECK(last_seq_num >= 0)
) STRICT;
"""

# chat_metadata table - schema version and device identity
METADATA_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS chat_metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
) STRICT;
"""

# All schema statements in order
ALL_SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    METADATA_SCHEMA,
    CHATROOM_SCHEMA,
    PEER_SCHEMA,
    MESSAGE_SCHEMA,
    MESSAGE_INDICES,
    WATERMARK_SCHEMA,
)
