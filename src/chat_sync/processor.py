"""
processor.py - Request processor.

The single entry point into the engine: process() takes a request
from the scheduler and returns a response.

Error policy:
- Registration and post-message errors propagate to the caller
- Network, server and timeout errors of a sync are turned into an
  ErrorResponse (the next scheduled sync retries)
- LocalStorageError always propagates
"""

import logging
from urllib.parse import urlsplit

from chat_sync.config import DEFAULT_CHATROOM, SYNC_TIMEOUT_SECONDS
from chat_sync.entities import Chatroom, Message, Peer, utc_now
from chat_sync.errors import (
    ChatSyncError,
    NetworkError,
    ServerError,
    SyncInProgressError,
    ValidationError,
)
from chat_sync.location import LocationProvider, StaticLocationProvider
from chat_sync.metrics import SyncLogger, outbound_queue_size
from chat_sync.protocol import DeviceIdentity
from chat_sync.requests import (
    DummyResponse,
    ErrorResponse,
    PostMessageRequest,
    PostMessageResponse,
    RegisterRequest,
    RegisterResponse,
    Request,
    Response,
    SynchronizeRequest,
    SynchronizeResponse,
)
from chat_sync.session import SyncSession
from chat_sync.settings import Settings
from chat_sync.store import ChatStore
from chat_sync.transport.base import ChatTransport

logger = logging.getLogger(__name__)

_SERVER_SCHEMES = ("http", "https", "ws", "wss")


class RequestProcessor:
    """
    Executes engine requests against one device store.

    Usage:
        processor = RequestProcessor(store, WebSocketTransport())
        await processor.process(RegisterRequest("http://relay:8000", "alice"))
        await processor.process(PostMessageRequest("general", "hi"))
        response = await processor.process(SynchronizeRequest())
    """

    def __init__(
        self,
        store: ChatStore,
        transport: ChatTransport,
        location_provider: LocationProvider | None = None,
        sync_timeout: float = SYNC_TIMEOUT_SECONDS,
        sync_logger: SyncLogger | None = None,
    ):
        self.store = store
        self.transport = transport
        self.location_provider = location_provider or StaticLocationProvider()
        self.settings = Settings(store)
        self._sync_logger = sync_logger or SyncLogger()
        self._session = SyncSession(store, transport, sync_timeout, self._sync_logger)
        store.initialize()

    async def process(self, request: Request) -> Response:
        match request:
            case RegisterRequest(server_uri=server_uri, chat_name=chat_name):
                return await self.register(server_uri, chat_name)
            case PostMessageRequest(chatroom=chatroom, text=text):
                return self.post_message(chatroom, text)
            case SynchronizeRequest():
                return await self.synchronize()
            case _:
                raise ValidationError(
                    f"Unknown request {type(request).__name__}", field="request"
                )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, server_uri: str, chat_name: str) -> RegisterResponse:
        """
        Register with the server and seed the local state.

        Nothing is written locally unless the server accepts.

        Raises:
            ValidationError: Bad arguments or already registered
            NetworkError: Server unreachable
            ServerError: Server rejected the registration
        """
        if self.settings.is_registered():
            raise ValidationError(
                f"Already registered as {self.settings.get_chat_name()!r}",
                field="chat_name",
                value=chat_name,
            )
        if not chat_name or not chat_name.strip():
            raise ValidationError("Chat name must not be empty", field="chat_name")
        if urlsplit(server_uri).scheme not in _SERVER_SCHEMES or not urlsplit(server_uri).netloc:
            raise ValidationError(
                "Server address must be an http(s) or ws(s) URL",
                field="server_uri",
                value=server_uri,
            )

        identity = DeviceIdentity(app_id=self.settings.get_app_id(), chat_name=chat_name)
        location = self.location_provider.current()

        try:
            result = await self.transport.register(server_uri, identity, location)
        except ChatSyncError as e:
            self._sync_logger.registration_failed(chat_name, server_uri, str(e))
            raise

        self.store.seed_registration(
            Peer(
                name=chat_name,
                timestamp=utc_now(),
                latitude=location.latitude,
                longitude=location.longitude,
            ),
            Chatroom(DEFAULT_CHATROOM),
            Settings.identity_record(chat_name, server_uri),
        )
        self._sync_logger.registration_completed(chat_name, server_uri, result.server_id)
        return RegisterResponse(
            app_id=result.app_id,
            chat_name=result.chat_name,
            server_id=result.server_id,
        )

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post_message(self, chatroom: str, text: str) -> PostMessageResponse:
        """
        Append a message to the outbound queue.

        Raises:
            NotRegisteredError: If the device has not registered
            ValidationError: Empty chatroom or text
        """
        app_id, chat_name, _ = self.settings.require_registration("post_message")
        if not text:
            raise ValidationError("Message text must not be empty", field="text")

        location = self.location_provider.current()
        message = self.store.insert_message(
            Message(
                chatroom=chatroom,
                text=text,
                app_id=app_id,
                timestamp=utc_now(),
                sender=chat_name,
                latitude=location.latitude,
                longitude=location.longitude,
            )
        )
        self._sync_logger.message_posted(str(app_id), chatroom, message.id)
        outbound_queue_size.set(self.store.count_unsent_messages())
        return PostMessageResponse(message)

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    async def synchronize(self) -> Response:
        if not self.settings.is_registered():
            logger.debug("Skipping sync: device not registered")
            return DummyResponse()

        app_id, chat_name, server_uri = self.settings.require_registration("synchronize")
        identity = DeviceIdentity(app_id=app_id, chat_name=chat_name)
        try:
            result = await self._session.run(
                server_uri, identity, self.location_provider.current()
            )
        except (NetworkError, ServerError, SyncInProgressError) as e:
            self._sync_logger.sync_failed(str(app_id), str(e), type(e).__name__)
            return ErrorResponse.from_exception(e)
        return SynchronizeResponse(result)
