"""
hub.py - In-memory relay state.

RelayHub is the server half of the sync protocol: it registers
devices, assigns the global message order and answers sync streams.
It is transport-agnostic; the FastAPI app (server.py) and the
in-process loopback transport both drive it.
"""

import logging
import threading
from dataclasses import replace
from uuid import UUID

from chat_sync.config import DEFAULT_CHATROOM
from chat_sync.entities import Chatroom, Message, Peer, utc_now
from chat_sync.errors import ServerError
from chat_sync.location import Location
from chat_sync.protocol import (
    DeviceIdentity,
    DownloadItem,
    SyncStart,
    UploadComplete,
    UploadEvent,
)
from chat_sync.transport.base import RegistrationResult

logger = logging.getLogger(__name__)


class RelayHub:
    """
    Thread-safe relay state.

    Messages are kept in one log ordered by sequence number. A message
    re-uploaded by its origin (same app id and local id) keeps the
    sequence number it was first given.
    """

    def __init__(self, server_id: str = "relay-001"):
        self.server_id = server_id
        self._lock = threading.Lock()
        self._devices: dict[UUID, str] = {}
        self._chatrooms: dict[str, Chatroom] = {DEFAULT_CHATROOM: Chatroom(DEFAULT_CHATROOM)}
        self._peers: dict[str, Peer] = {}
        self._messages: list[Message] = []
        self._origin_index: dict[tuple[UUID, int], int] = {}

    @property
    def last_seq_num(self) -> int:
        with self._lock:
            return len(self._messages)

    def register(self, identity: DeviceIdentity, location: Location) -> RegistrationResult:
        """
        Register a device under a chat name.

        Re-registering the same (app id, name) pair is accepted.

        Raises:
            ServerError: 400 for an empty name, 409 if the name belongs
                to another device
        """
        if not identity.chat_name:
            raise ServerError("Chat name must not be empty", code=400)
        with self._lock:
            for app_id, name in self._devices.items():
                if name == identity.chat_name and app_id != identity.app_id:
                    raise ServerError(
                        f"Chat name {identity.chat_name!r} is already taken", code=409
                    )
            self._devices[identity.app_id] = identity.chat_name
            self._peers[identity.chat_name] = Peer(
                name=identity.chat_name,
                timestamp=utc_now(),
                latitude=location.latitude,
                longitude=location.longitude,
            )
        logger.info("Registered %s (%s)", identity.chat_name, identity.app_id)
        return RegistrationResult(
            app_id=str(identity.app_id),
            chat_name=identity.chat_name,
            server_id=self.server_id,
        )

    def is_registered(self, identity: DeviceIdentity) -> bool:
        with self._lock:
            return self._devices.get(identity.app_id) == identity.chat_name

    def open_session(self, identity: DeviceIdentity) -> "RelaySession":
        """
        Raises:
            ServerError: 401 if the device is not registered
        """
        if not self.is_registered(identity):
            raise ServerError(f"Unknown device {identity.app_id}", code=401)
        return RelaySession(self, identity)

    def seen(self, identity: DeviceIdentity, start: SyncStart) -> None:
        with self._lock:
            self._peers[identity.chat_name] = Peer(
                name=identity.chat_name,
                timestamp=utc_now(),
                latitude=start.latitude,
                longitude=start.longitude,
            )

    def add_chatroom(self, chatroom: Chatroom) -> None:
        with self._lock:
            self._chatrooms.setdefault(chatroom.name, chatroom)

    def post(self, identity: DeviceIdentity, message: Message) -> int:
        """
        Append an uploaded message to the log. Returns its sequence number.

        Raises:
            ServerError: 403 if the message claims another origin,
                400 if it has no local id
        """
        if message.app_id != identity.app_id:
            raise ServerError("Message app id does not match the device", code=403)
        if message.id is None:
            raise ServerError("Uploaded message has no local id", code=400)
        key = (message.app_id, message.id)
        with self._lock:
            seq_num = self._origin_index.get(key)
            if seq_num is not None:
                return seq_num
            seq_num = len(self._messages) + 1
            self._chatrooms.setdefault(message.chatroom, Chatroom(message.chatroom))
            self._messages.append(
                replace(message, seq_num=seq_num, sender=identity.chat_name)
            )
            self._origin_index[key] = seq_num
        logger.debug("Assigned seq %d to message %s from %s", seq_num, message.id, identity.chat_name)
        return seq_num

    def downloads_since(self, last_seq_num: int) -> list[DownloadItem]:
        """Chatrooms, peers, then messages newer than last_seq_num in order."""
        with self._lock:
            items: list[DownloadItem] = list(self._chatrooms.values())
            items.extend(self._peers.values())
            items.extend(self._messages[max(last_seq_num, 0):])
        return items


class RelaySession:
    """Server side of one sync stream."""

    def __init__(self, hub: RelayHub, identity: DeviceIdentity):
        self._hub = hub
        self._identity = identity
        self._last_seq_num: int | None = None
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    def accept(self, event: UploadEvent) -> None:
        """
        Process one upload event.

        Raises:
            ServerError: On a protocol violation
        """
        if self._completed:
            raise ServerError("Upload after upload completion", code=400)
        if isinstance(event, SyncStart):
            self._last_seq_num = event.last_seq_num
            self._hub.seen(self._identity, event)
            return
        if self._last_seq_num is None:
            raise ServerError("Sync stream must begin with a start item", code=400)
        if isinstance(event, Chatroom):
            self._hub.add_chatroom(event)
        elif isinstance(event, Message):
            self._hub.post(self._identity, event)
        elif isinstance(event, UploadComplete):
            self._completed = True
        else:
            raise ServerError(f"Unexpected upload item {type(event).__name__}", code=400)

    def downloads(self) -> list[DownloadItem]:
        if not self._completed:
            raise ServerError("Download requested before upload completion", code=400)
        return self._hub.downloads_since(self._last_seq_num or 0)
