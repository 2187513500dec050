"""
loopback.py - In-process transport bound to a RelayHub.

Frames are encoded and decoded exactly as on the wire, but never
leave the process. Used for tests and local demos. A few switches
simulate an unreliable network:

- reachable=False: every call fails with NetworkError
- error_after=N: the download aborts with an error frame after N items
- withhold_completion=True: the server never signals completion
"""

import asyncio
import logging

from chat_sync.errors import NetworkError, ServerError
from chat_sync.location import Location
from chat_sync.protocol import (
    DeviceIdentity,
    DownloadComplete,
    DownloadError,
    DownloadEvent,
    UploadComplete,
    UploadItem,
    decode_download,
    decode_upload,
    encode_download,
    encode_upload,
)
from chat_sync.relay.hub import RelayHub, RelaySession
from chat_sync.transport.base import ChatTransport, RegistrationResult, SyncStream

logger = logging.getLogger(__name__)


class LoopbackSyncStream(SyncStream):
    def __init__(self, session: RelaySession, transport: "LoopbackTransport"):
        self._session = session
        self._transport = transport
        self._downloads: asyncio.Queue[bytes] = asyncio.Queue()
        self._closed = False

    async def send(self, item: UploadItem) -> None:
        self._upload(encode_upload(item))

    async def complete(self) -> None:
        self._upload(encode_upload(UploadComplete()))
        # Server starts its download half only now
        items = self._session.downloads()
        error_after = self._transport.error_after
        for index, item in enumerate(items):
            if error_after is not None and index >= error_after:
                self._downloads.put_nowait(
                    encode_download(DownloadError(code=500, message="Simulated server failure"))
                )
                return
            self._downloads.put_nowait(encode_download(item))
        if not self._transport.withhold_completion:
            self._downloads.put_nowait(encode_download(DownloadComplete()))

    async def receive(self) -> DownloadEvent:
        if self._closed:
            raise NetworkError("Sync stream closed")
        return decode_download(await self._downloads.get())

    async def close(self) -> None:
        self._closed = True

    def _upload(self, frame: bytes) -> None:
        if self._closed:
            raise NetworkError("Sync stream closed")
        try:
            self._session.accept(decode_upload(frame))
        except ServerError as e:
            self._downloads.put_nowait(
                encode_download(DownloadError(code=e.code or 400, message=e.message))
            )


class LoopbackTransport(ChatTransport):
    """Transport that talks to a RelayHub in the same process."""

    def __init__(
        self,
        hub: RelayHub,
        reachable: bool = True,
        error_after: int | None = None,
        withhold_completion: bool = False,
    ):
        self.hub = hub
        self.reachable = reachable
        self.error_after = error_after
        self.withhold_completion = withhold_completion

    @property
    def name(self) -> str:
        return "Loopback"

    async def register(
        self,
        server_uri: str,
        identity: DeviceIdentity,
        location: Location,
    ) -> RegistrationResult:
        self._check_reachable(server_uri)
        return self.hub.register(identity, location)

    async def open_sync(self, server_uri: str, identity: DeviceIdentity) -> SyncStream:
        self._check_reachable(server_uri)
        session = self.hub.open_session(identity)
        return LoopbackSyncStream(session, self)

    def _check_reachable(self, server_uri: str) -> None:
        if not self.reachable:
            raise NetworkError("Server unreachable", endpoint=server_uri)
