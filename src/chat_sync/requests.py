"""
requests.py - Engine requests and responses.

The scheduler hands the engine one of three requests and gets back
one of five responses. Both are closed sets of frozen dataclasses,
dispatched with a single match statement in RequestProcessor.
"""

from dataclasses import dataclass
from typing import Union

from chat_sync.entities import Message
from chat_sync.errors import ChatSyncError, NetworkError, ServerError
from chat_sync.session import SyncResult


# =============================================================================
# Requests
# =============================================================================

@dataclass(frozen=True)
class RegisterRequest:
    """Register this device under chat_name with the server at server_uri."""
    server_uri: str
    chat_name: str


@dataclass(frozen=True)
class PostMessageRequest:
    """Append a message to the outbound queue."""
    chatroom: str
    text: str


@dataclass(frozen=True)
class SynchronizeRequest:
    """Run one sync session."""


Request = Union[RegisterRequest, PostMessageRequest, SynchronizeRequest]


# =============================================================================
# Responses
# =============================================================================

@dataclass(frozen=True)
class ErrorResponse:
    """
    A failed request.

    response_code is the server's status code when the server answered,
    0 when it could not be reached.
    """
    response_code: int
    response_message: str
    error_message: str
    kind: str

    @classmethod
    def from_exception(cls, error: ChatSyncError) -> "ErrorResponse":
        if isinstance(error, ServerError):
            code, message = error.code or 0, "Server error"
        elif isinstance(error, NetworkError):
            code, message = 0, "Network error"
        else:
            code, message = 0, "Request rejected"
        return cls(
            response_code=code,
            response_message=message,
            error_message=str(error),
            kind=type(error).__name__,
        )

    def is_valid(self) -> bool:
        return False


@dataclass(frozen=True)
class DummyResponse:
    """Nothing was done (e.g. a background sync before registration)."""

    def is_valid(self) -> bool:
        return True


@dataclass(frozen=True)
class RegisterResponse:
    app_id: str
    chat_name: str
    server_id: str

    def is_valid(self) -> bool:
        return True


@dataclass(frozen=True)
class PostMessageResponse:
    message: Message

    def is_valid(self) -> bool:
        return True


@dataclass(frozen=True)
class SynchronizeResponse:
    result: SyncResult

    def is_valid(self) -> bool:
        return True


Response = Union[
    ErrorResponse,
    DummyResponse,
    RegisterResponse,
    PostMessageResponse,
    SynchronizeResponse,
]
