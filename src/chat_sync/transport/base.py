"""
base.py - Abstract base classes for chat transports.

All transport implementations must inherit from ChatTransport.
A transport offers the two server calls the engine needs: a unary
registration call and a bidirectional sync stream.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from chat_sync.location import Location
from chat_sync.protocol import DeviceIdentity, DownloadEvent, UploadItem


@dataclass(frozen=True)
class RegistrationResult:
    """Server's answer to a successful registration."""
    app_id: str
    chat_name: str
    server_id: str


class SyncStream(ABC):
    """
    One open sync stream.

    The upload half is written with send() and half-closed with
    complete(); the download half is read with receive() until a
    DownloadComplete or DownloadError event arrives.
    """

    @abstractmethod
    async def send(self, item: UploadItem) -> None:
        """
        Send one upload item.

        Raises:
            NetworkError: If the connection is lost
        """
        pass

    @abstractmethod
    async def complete(self) -> None:
        """Signal upload completion."""
        pass

    @abstractmethod
    async def receive(self) -> DownloadEvent:
        """
        Wait for the next download event.

        Raises:
            NetworkError: If the connection is lost
            ServerError: If the server sends a malformed frame
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the stream; no further events are delivered."""
        pass


class ChatTransport(ABC):
    """
    Abstract base class for chat transports.

    Implementations must provide:
    - Registration (unary call)
    - Opening a sync stream
    """

    @abstractmethod
    async def register(
        self,
        server_uri: str,
        identity: DeviceIdentity,
        location: Location,
    ) -> RegistrationResult:
        """
        Register this device with the server.

        Raises:
            NetworkError: If the server cannot be reached
            ServerError: If the server rejects the registration
        """
        pass

    @abstractmethod
    async def open_sync(self, server_uri: str, identity: DeviceIdentity) -> SyncStream:
        """
        Open a bidirectional sync stream.

        Raises:
            NetworkError: If the server cannot be reached
        """
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Transport name for logging."""
        pass
