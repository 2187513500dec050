"""
session.py - One synchronization round trip.

A SyncSession opens a sync stream and runs both halves at once:

    upload:   start{last_seq_num, location}, chatrooms, unsent messages,
              upload_complete
    download: chatrooms, peers, messages ... download_complete | error

Every downloaded item is applied in its own transaction together with
the watermark advance, so whatever was applied before a failure stays
applied and is not requested again. Unsent messages keep seq_num 0
until their echo arrives, so a failed session is safe to retry.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from uuid import UUID

from chat_sync.config import SYNC_TIMEOUT_SECONDS
from chat_sync.entities import Chatroom, Message, Peer
from chat_sync.errors import ServerError, SyncInProgressError, SyncTimeoutError
from chat_sync.location import Location
from chat_sync.metrics import SyncLogger, outbound_queue_size, watermark_value
from chat_sync.protocol import DeviceIdentity, DownloadComplete, DownloadError, SyncStart
from chat_sync.store import ChatStore
from chat_sync.transport.base import ChatTransport, SyncStream

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one sync session (counts cover the items actually applied)."""
    chatrooms_sent: int = 0
    messages_sent: int = 0
    chatrooms_received: int = 0
    peers_received: int = 0
    messages_received: int = 0
    last_seq_num: int = 0
    duration_ms: float = 0.0


class SyncSession:
    """
    Runs sync round trips for one device store.

    At most one session per store runs at a time; a concurrent call
    fails immediately with SyncInProgressError.
    """

    def __init__(
        self,
        store: ChatStore,
        transport: ChatTransport,
        timeout: float = SYNC_TIMEOUT_SECONDS,
        sync_logger: SyncLogger | None = None,
    ):
        self._store = store
        self._transport = transport
        self._timeout = timeout
        self._sync_logger = sync_logger or SyncLogger()

    async def run(
        self,
        server_uri: str,
        identity: DeviceIdentity,
        location: Location,
    ) -> SyncResult:
        """
        Perform one full upload/download round trip.

        Raises:
            SyncInProgressError: If another session is running on this store
            NetworkError: If the connection fails (SyncTimeoutError on timeout)
            ServerError: If the server signals an error
            LocalStorageError: If applying a download fails
        """
        if not self._store.sync_guard.acquire(blocking=False):
            raise SyncInProgressError()
        try:
            return await self._run(server_uri, identity, location)
        finally:
            self._store.sync_guard.release()

    async def _run(
        self,
        server_uri: str,
        identity: DeviceIdentity,
        location: Location,
    ) -> SyncResult:
        started = time.perf_counter()
        result = SyncResult(last_seq_num=self._store.get_last_seq_num())
        device = str(identity.app_id)
        self._sync_logger.sync_started(device, server_uri, self._transport.name)

        try:
            stream = await asyncio.wait_for(
                self._transport.open_sync(server_uri, identity), self._timeout
            )
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(
                f"Timed out opening sync stream to {server_uri}", timeout=self._timeout
            ) from e

        try:
            # Downloads are consumed from the start of the session
            reader = asyncio.create_task(self._download(stream, identity.app_id, result))
            try:
                await self._bounded(self._upload(stream, location, result), "upload")
            except BaseException:
                reader.cancel()
                await asyncio.gather(reader, return_exceptions=True)
                raise
            await self._bounded(reader, "download")
        finally:
            await stream.close()

        result.duration_ms = (time.perf_counter() - started) * 1000
        outbound_queue_size.set(self._store.count_unsent_messages())
        watermark_value.set(result.last_seq_num)
        self._sync_logger.sync_completed(device, result)
        return result

    async def _bounded(self, awaitable, phase: str) -> None:
        try:
            await asyncio.wait_for(awaitable, self._timeout)
        except asyncio.TimeoutError as e:
            logger.error("Sync %s timed out after %ss", phase, self._timeout)
            raise SyncTimeoutError(
                f"Sync {phase} did not complete", timeout=self._timeout
            ) from e

    async def _upload(self, stream: SyncStream, location: Location, result: SyncResult) -> None:
        await stream.send(
            SyncStart(
                last_seq_num=result.last_seq_num,
                latitude=location.latitude,
                longitude=location.longitude,
            )
        )

        for chatroom in self._store.get_all_chatrooms():
            await stream.send(chatroom)
            result.chatrooms_sent += 1

        # Snapshot of the outbound queue; later posts go with the next session
        for message in self._store.get_unsent_messages():
            await stream.send(message)
            result.messages_sent += 1

        await stream.complete()
        logger.info(
            "Finished uploading %d chatrooms and %d messages",
            result.chatrooms_sent, result.messages_sent,
        )

    async def _download(self, stream: SyncStream, app_id: UUID, result: SyncResult) -> None:
        while True:
            event = await stream.receive()
            match event:
                case DownloadComplete():
                    logger.info("Finished download from server")
                    return
                case DownloadError():
                    logger.error("Server error during download: %s", event.message)
                    raise event.to_exception()
                case Chatroom():
                    self._store.apply_downloaded_chatroom(event)
                    result.chatrooms_received += 1
                case Peer():
                    self._store.apply_downloaded_peer(event)
                    result.peers_received += 1
                case Message():
                    result.last_seq_num = self._store.apply_downloaded_message(app_id, event)
                    result.messages_received += 1
                case _:
                    raise ServerError(f"Unexpected download item {type(event).__name__}")
