"""
chat_sync - Client sync engine for a relay-based group chat.

Keeps a local SQLite copy of chatrooms, peers and messages,
queues outgoing messages offline and reconciles them with a relay
server over a bidirectional sync stream.
"""

from chat_sync.entities import Chatroom, Message, Peer
from chat_sync.errors import (
    ChatSyncError,
    NetworkError,
    SyncTimeoutError,
    ServerError,
    LocalStorageError,
    SchemaError,
    ValidationError,
    NotRegisteredError,
    SyncInProgressError,
    RegistrationCancelledError,
)
from chat_sync.location import Location, LocationProvider, StaticLocationProvider
from chat_sync.processor import RequestProcessor
from chat_sync.scheduler import ChatScheduler, SyncStatus
from chat_sync.session import SyncResult, SyncSession
from chat_sync.store import ChatStore

__version__ = "0.1.0"
__all__ = [
    # Core
    "ChatStore",
    "RequestProcessor",
    "ChatScheduler",
    "SyncStatus",
    "SyncSession",
    "SyncResult",
    # Entities
    "Chatroom",
    "Message",
    "Peer",
    "Location",
    "LocationProvider",
    "StaticLocationProvider",
    # Errors
    "ChatSyncError",
    "NetworkError",
    "SyncTimeoutError",
    "ServerError",
    "LocalStorageError",
    "SchemaError",
    "ValidationError",
    "NotRegisteredError",
    "SyncInProgressError",
    "RegistrationCancelledError",
]
