"""
store.py - Local chat store.

ChatStore owns the device database: chatrooms, peers, messages,
the watermark (last sequence number incorporated from the server)
and the identity metadata. Every public method is atomic; the
multi-step operations used by a sync session run in a single
transaction so that a downloaded item and its watermark bump
commit together or not at all.

All access goes through one connection guarded by a re-entrant
lock, so concurrent callers interleave only at transaction
boundaries.
"""

import logging
import sqlite3
import threading
from typing import Any, Callable
from uuid import UUID

from chat_sync.codec import decode_entity, encode_entity
from chat_sync.config import WATERMARK_ID
from chat_sync.db.connection import create_connection, execute_in_transaction
from chat_sync.db.migrations import initialize_tables
from chat_sync.entities import Chatroom, Message, Peer
from chat_sync.errors import LocalStorageError, SchemaError, ServerError

logger = logging.getLogger(__name__)

_INSERT_CHATROOM = "INSERT OR IGNORE INTO chatroom (name) VALUES (:name)"

_UPSERT_PEER = """
INSERT INTO peer (name, timestamp, latitude, longitude)
VALUES (:name, :timestamp, :latitude, :longitude)
ON CONFLICT(name) DO UPDATE SET
    timestamp = excluded.timestamp,
    latitude = excluded.latitude,
    longitude = excluded.longitude
"""

_INSERT_MESSAGE = """
INSERT OR IGNORE INTO message
    (id, chatroom, text, seq_num, app_id, timestamp, latitude, longitude, sender)
VALUES
    (:id, :chatroom, :text, :seq_num, :app_id, :timestamp, :latitude, :longitude, :sender)
"""

# Only an unacknowledged row may receive its sequence number
_UPDATE_SEQ_NUM = "UPDATE message SET seq_num = ? WHERE id = ? AND seq_num = 0"

# Running maximum: the watermark never moves backwards
_ADVANCE_WATERMARK = """
UPDATE watermark SET last_seq_num = MAX(last_seq_num, ?) WHERE id = ?
"""


class ChatStore:
    """
    Durable local store for one device.

    Usage:
        with ChatStore("device.db") as store:
            store.initialize()
            store.insert_chatroom(Chatroom("general"))
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        # Held for the whole of a sync session; never blocks
        self.sync_guard = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self._conn = create_connection(self._db_path)
            return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def initialize(self) -> int:
        """Create the chat tables (idempotent). Returns the schema version."""
        return self.transaction(initialize_tables)

    def transaction(self, operation: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run operation inside one serialized transaction."""
        with self._lock:
            return execute_in_transaction(self.connection, operation)

    def _query(self, sql: str, params: Any = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.connection.execute(sql, params).fetchall()
            except sqlite3.OperationalError as e:
                if "no such table" in str(e):
                    raise SchemaError(f"Database not initialized: {e}") from e
                raise LocalStorageError(f"Query failed: {e}", operation="query", sql=sql) from e
            except sqlite3.Error as e:
                raise LocalStorageError(f"Query failed: {e}", operation="query", sql=sql) from e

    # ------------------------------------------------------------------
    # Chatrooms
    # ------------------------------------------------------------------

    def insert_chatroom(self, chatroom: Chatroom) -> None:
        """Insert a chatroom unless one with the same name exists."""
        self.transaction(lambda conn: _insert_chatroom(conn, chatroom))

    def get_all_chatrooms(self) -> list[Chatroom]:
        rows = self._query("SELECT name FROM chatroom ORDER BY name")
        return [decode_entity(Chatroom, row) for row in rows]

    # ------------------------------------------------------------------
    # Peers
    # ------------------------------------------------------------------

    def upsert_peer(self, peer: Peer) -> int:
        """Insert a peer or overwrite its last sighting. Returns the local id."""
        return self.transaction(lambda conn: _upsert_peer(conn, peer))

    def get_peer(self, name: str) -> Peer | None:
        rows = self._query("SELECT * FROM peer WHERE name = ?", (name,))
        return decode_entity(Peer, rows[0]) if rows else None

    def get_all_peers(self) -> list[Peer]:
        rows = self._query("SELECT * FROM peer ORDER BY name")
        return [decode_entity(Peer, row) for row in rows]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def insert_message(self, message: Message) -> Message:
        """
        Insert a message, ignoring a conflict on its primary key.

        A message without an id gets a fresh local id. The owning
        chatroom is created if it is not known yet.

        Returns:
            The stored message (with its local id)
        """
        def do_insert(conn: sqlite3.Connection) -> Message:
            _insert_chatroom(conn, Chatroom(message.chatroom))
            return _insert_message(conn, message)

        return self.transaction(do_insert)

    def get_message(self, id: int) -> Message | None:
        rows = self._query("SELECT * FROM message WHERE id = ?", (id,))
        return decode_entity(Message, rows[0]) if rows else None

    def get_messages(self, chatroom: str | None = None) -> list[Message]:
        """
        Messages in display order: settled messages by sequence number,
        then unsent ones by local id.
        """
        sql = "SELECT * FROM message"
        params: tuple = ()
        if chatroom is not None:
            sql += " WHERE chatroom = ?"
            params = (chatroom,)
        sql += " ORDER BY seq_num = 0, seq_num, id"
        return [decode_entity(Message, row) for row in self._query(sql, params)]

    def get_unsent_messages(self) -> list[Message]:
        """The outbound queue: all messages the server has not acknowledged."""
        rows = self._query("SELECT * FROM message WHERE seq_num = 0 ORDER BY id")
        return [decode_entity(Message, row) for row in rows]

    def count_unsent_messages(self) -> int:
        return self._query("SELECT COUNT(*) FROM message WHERE seq_num = 0")[0][0]

    def update_seq_num(self, id: int, seq_num: int) -> bool:
        """
        Record the server-assigned sequence number of an unsent message.

        Returns:
            True if an unsent row was settled, False otherwise
        """
        return self.transaction(lambda conn: _update_seq_num(conn, id, seq_num))

    # ------------------------------------------------------------------
    # Watermark
    # ------------------------------------------------------------------

    def init_last_seq_num(self) -> None:
        """Create the watermark row at 0 if it does not exist."""
        self.transaction(_init_watermark)

    def get_last_seq_num(self) -> int:
        rows = self._query(
            "SELECT last_seq_num FROM watermark WHERE id = ?", (WATERMARK_ID,)
        )
        if not rows:
            raise SchemaError("Watermark not initialized (device not registered?)")
        return rows[0][0]

    def advance_last_seq_num(self, seq_num: int) -> int:
        """Raise the watermark to seq_num if higher. Returns the new value."""
        return self.transaction(lambda conn: _advance_watermark(conn, seq_num))

    # ------------------------------------------------------------------
    # Sync downloads (one transaction each)
    # ------------------------------------------------------------------

    def apply_downloaded_chatroom(self, chatroom: Chatroom) -> None:
        self.insert_chatroom(chatroom)

    def apply_downloaded_peer(self, peer: Peer) -> None:
        self.upsert_peer(peer)

    def apply_downloaded_message(self, app_id: UUID, message: Message) -> int:
        """
        Insert another peer's message or settle one of our own.

        If the message originated on this device (app_id matches) it is
        the server's acknowledgement of an unsent message: the row with
        the same local id receives the server sequence number. Otherwise
        the message is stored under a fresh local id; a message already
        stored with the same (app_id, seq_num) is ignored. A foreign
        message without a sequence number is rejected with ServerError
        and nothing is written.

        The watermark is advanced in the same transaction, so a broken
        connection never loses track of what has been incorporated.

        Returns:
            The watermark after applying the message
        """
        def do_apply(conn: sqlite3.Connection) -> int:
            if message.app_id == app_id:
                if message.id is None or not _update_seq_num(conn, message.id, message.seq_num):
                    logger.debug(
                        "Echo of message %s (seq %d) matched no unsent row",
                        message.id, message.seq_num,
                    )
            else:
                if message.seq_num <= 0:
                    raise ServerError("Downloaded message has no sequence number")
                _insert_chatroom(conn, Chatroom(message.chatroom))
                _insert_message(conn, message.with_id(None))
            return _advance_watermark(conn, message.seq_num)

        return self.transaction(do_apply)

    # ------------------------------------------------------------------
    # Identity metadata
    # ------------------------------------------------------------------

    def get_metadata(self, key: str) -> str | None:
        rows = self._query("SELECT value FROM chat_metadata WHERE key = ?", (key,))
        return rows[0][0] if rows else None

    def set_metadata(self, key: str, value: str) -> None:
        self.transaction(lambda conn: _set_metadata(conn, key, value))

    def seed_registration(
        self,
        peer: Peer,
        default_chatroom: Chatroom,
        identity: dict[str, str],
    ) -> None:
        """
        Write the local state established by a successful registration.

        Peer record for this device, the default chatroom, the watermark
        at 0 and the identity scalars are committed together.
        """
        def do_seed(conn: sqlite3.Connection) -> None:
            _upsert_peer(conn, peer)
            _insert_chatroom(conn, default_chatroom)
            _init_watermark(conn)
            for key, value in identity.items():
                _set_metadata(conn, key, value)

        self.transaction(do_seed)
        logger.info("Seeded local state for %s", peer.name)


def _insert_chatroom(conn: sqlite3.Connection, chatroom: Chatroom) -> None:
    conn.execute(_INSERT_CHATROOM, encode_entity(chatroom))


def _upsert_peer(conn: sqlite3.Connection, peer: Peer) -> int:
    conn.execute(_UPSERT_PEER, encode_entity(peer))
    return conn.execute("SELECT id FROM peer WHERE name = ?", (peer.name,)).fetchone()[0]


def _insert_message(conn: sqlite3.Connection, message: Message) -> Message:
    cursor = conn.execute(_INSERT_MESSAGE, encode_entity(message))
    if cursor.rowcount == 0:
        # Ignored: an existing row with the same id (or the same settled seq_num)
        return message
    return message.with_id(cursor.lastrowid)


def _update_seq_num(conn: sqlite3.Connection, id: int, seq_num: int) -> bool:
    return conn.execute(_UPDATE_SEQ_NUM, (seq_num, id)).rowcount > 0


def _init_watermark(conn: sqlite3.Connection) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO watermark (id, last_seq_num) VALUES (?, 0)",
        (WATERMARK_ID,),
    )


def _advance_watermark(conn: sqlite3.Connection, seq_num: int) -> int:
    cursor = conn.execute(_ADVANCE_WATERMARK, (seq_num, WATERMARK_ID))
    if cursor.rowcount == 0:
        raise SchemaError("Watermark not initialized (device not registered?)")
    return conn.execute(
        "SELECT last_seq_num FROM watermark WHERE id = ?", (WATERMARK_ID,)
    ).fetchone()[0]


def _set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT INTO chat_metadata (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )
