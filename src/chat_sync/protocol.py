"""
protocol.py - Sync stream item types and frame encoding.

Upload direction (device -> server):
    start, chatroom*, message*, upload_complete

Download direction (server -> device):
    (chatroom | peer | message)*, then download_complete or error

Each item travels as one frame: a canonical MessagePack map
{"type": <kind>, "payload": <map or nil>}.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union
from uuid import UUID

from chat_sync.codec import decode_entity, encode_entity, pack_dict, unpack_dict
from chat_sync.entities import Chatroom, Message, Peer
from chat_sync.errors import ServerError, ValidationError


class UploadKind(str, Enum):
    START = "start"
    CHATROOM = "chatroom"
    MESSAGE = "message"
    UPLOAD_COMPLETE = "upload_complete"


class DownloadKind(str, Enum):
    CHATROOM = "chatroom"
    PEER = "peer"
    MESSAGE = "message"
    DOWNLOAD_COMPLETE = "download_complete"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SyncStart:
    """First upload item: "send me everything newer than last_seq_num"."""
    last_seq_num: int
    latitude: float | None = None
    longitude: float | None = None


@dataclass(frozen=True, slots=True)
class UploadComplete:
    """The device has finished uploading (half-close)."""


@dataclass(frozen=True, slots=True)
class DownloadComplete:
    """The server has finished downloading."""


@dataclass(frozen=True, slots=True)
class DownloadError:
    """The server aborted the download."""
    code: int
    message: str

    def to_exception(self) -> ServerError:
        return ServerError(f"Server error during sync: {self.message}", code=self.code)


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Application headers sent with every request."""
    app_id: UUID
    chat_name: str


UploadItem = Union[SyncStart, Chatroom, Message]
DownloadItem = Union[Chatroom, Peer, Message]
UploadEvent = Union[SyncStart, Chatroom, Message, UploadComplete]
DownloadEvent = Union[Chatroom, Peer, Message, DownloadComplete, DownloadError]

_UPLOAD_TYPES: dict[type, UploadKind] = {
    SyncStart: UploadKind.START,
    Chatroom: UploadKind.CHATROOM,
    Message: UploadKind.MESSAGE,
    UploadComplete: UploadKind.UPLOAD_COMPLETE,
}

_DOWNLOAD_TYPES: dict[type, DownloadKind] = {
    Chatroom: DownloadKind.CHATROOM,
    Peer: DownloadKind.PEER,
    Message: DownloadKind.MESSAGE,
    DownloadComplete: DownloadKind.DOWNLOAD_COMPLETE,
    DownloadError: DownloadKind.ERROR,
}

_UPLOAD_CLASSES = {kind: cls for cls, kind in _UPLOAD_TYPES.items()}
_DOWNLOAD_CLASSES = {kind: cls for cls, kind in _DOWNLOAD_TYPES.items()}


def _encode_frame(kind: Enum, item: Any) -> bytes:
    fields = encode_entity(item)
    return pack_dict({"type": kind.value, "payload": fields or None})


def _decode_frame(data: bytes, kinds: type[Enum], classes: dict) -> Any:
    try:
        frame = unpack_dict(data)
        kind = kinds(frame.get("type"))
    except (ValidationError, ValueError) as e:
        raise ServerError(f"Malformed sync frame: {e}") from e
    payload = frame.get("payload") or {}
    if not isinstance(payload, dict):
        raise ServerError(f"Malformed {kind.value} payload")
    try:
        return decode_entity(classes[kind], payload)
    except ValidationError as e:
        raise ServerError(f"Malformed {kind.value} payload: {e}") from e


def encode_upload(item: UploadEvent) -> bytes:
    return _encode_frame(_UPLOAD_TYPES[type(item)], item)


def decode_upload(data: bytes) -> UploadEvent:
    """
    Raises:
        ServerError: If the frame is malformed or of an unknown kind
    """
    return _decode_frame(data, UploadKind, _UPLOAD_CLASSES)


def encode_download(item: DownloadEvent) -> bytes:
    return _encode_frame(_DOWNLOAD_TYPES[type(item)], item)


def decode_download(data: bytes) -> DownloadEvent:
    """
    Raises:
        ServerError: If the frame is malformed or of an unknown kind
    """
    return _decode_frame(data, DownloadKind, _DOWNLOAD_CLASSES)
