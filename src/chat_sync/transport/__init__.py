"""
transport - Server connections for registration and sync.

WebSocketTransport talks to a relay over the network; the loopback
transport (chat_sync.transport.loopback) binds to an in-process RelayHub.
"""

from chat_sync.transport.base import ChatTransport, RegistrationResult, SyncStream
from chat_sync.transport.websocket_transport import WebSocketTransport

__all__ = [
    "ChatTransport",
    "RegistrationResult",
    "SyncStream",
    "WebSocketTransport",
]
