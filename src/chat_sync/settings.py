"""
settings.py - Device identity and configuration store.

Three persistent scalars identify a device to the server:
the app id (a UUID generated with the tables), the chat name
chosen at registration and the server address registered with.
They live in the chat_metadata table of the device database.
"""

from uuid import UUID

from chat_sync.config import (
    METADATA_KEY_APP_ID,
    METADATA_KEY_CHAT_NAME,
    METADATA_KEY_SERVER_URI,
)
from chat_sync.errors import NotRegisteredError, SchemaError
from chat_sync.store import ChatStore


class Settings:
    """Identity of this device, backed by a ChatStore."""

    def __init__(self, store: ChatStore):
        self._store = store

    def get_app_id(self) -> UUID:
        """Installation id, generated when the tables are created."""
        value = self._store.get_metadata(METADATA_KEY_APP_ID)
        if value is None:
            raise SchemaError("App id missing (database not initialized?)")
        return UUID(value)

    def get_chat_name(self) -> str | None:
        return self._store.get_metadata(METADATA_KEY_CHAT_NAME)

    def get_server_uri(self) -> str | None:
        return self._store.get_metadata(METADATA_KEY_SERVER_URI)

    def is_registered(self) -> bool:
        return self.get_chat_name() is not None and self.get_server_uri() is not None

    def require_registration(self, operation: str) -> tuple[UUID, str, str]:
        """
        Return (app_id, chat_name, server_uri).

        Raises:
            NotRegisteredError: If the device has not registered yet
        """
        chat_name = self.get_chat_name()
        server_uri = self.get_server_uri()
        if chat_name is None or server_uri is None:
            raise NotRegisteredError(operation)
        return self.get_app_id(), chat_name, server_uri

    @staticmethod
    def identity_record(chat_name: str, server_uri: str) -> dict[str, str]:
        """Metadata written atomically by a successful registration."""
        return {
            METADATA_KEY_CHAT_NAME: chat_name,
            METADATA_KEY_SERVER_URI: server_uri,
        }
