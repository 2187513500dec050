"""
entities.py - Chat data structures.

Chatrooms, peers and messages are the rows of the local store and
the payloads of the sync stream. All three are frozen dataclasses:
a message only ever changes by producing a new value with a
different sequence number (see ChatStore.update_seq_num).
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from uuid import UUID

from chat_sync.errors import ValidationError


def utc_now() -> datetime:
    """Current instant as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Chatroom:
    name: str

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Chatroom name must not be empty", field="name")

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class Peer:
    """
    A chat participant, identified by its unique name.

    timestamp/latitude/longitude record when and where we last heard
    from the peer; a later sighting overwrites them.
    """
    name: str
    timestamp: datetime
    latitude: float | None = None
    longitude: float | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Peer name must not be empty", field="name")

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class Message:
    """
    A chat message.

    seq_num == 0 marks a message authored on this device that the
    server has not yet acknowledged. A positive seq_num is the position
    the server assigned in its total order of messages. id is the local
    primary key; None means "not yet stored".
    """
    chatroom: str
    text: str
    app_id: UUID
    timestamp: datetime
    sender: str
    seq_num: int = 0
    latitude: float | None = None
    longitude: float | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if not self.chatroom:
            raise ValidationError("Message chatroom must not be empty", field="chatroom")
        if self.seq_num < 0:
            raise ValidationError(
                f"seq_num must be non-negative, got {self.seq_num}",
                field="seq_num",
                value=self.seq_num,
            )
        if not isinstance(self.app_id, UUID):
            raise ValidationError(
                f"app_id must be a UUID, got {type(self.app_id).__name__}",
                field="app_id",
                value=self.app_id,
            )

    @property
    def is_settled(self) -> bool:
        return self.seq_num > 0

    def with_id(self, id: int | None) -> "Message":
        return replace(self, id=id)

    def with_seq_num(self, seq_num: int) -> "Message":
        return replace(self, seq_num=seq_num)

    def __str__(self) -> str:
        return self.text
