"""
websocket_transport.py - WebSocket/HTTP chat transport.

Registration is a JSON POST over HTTP (httpx); synchronization is a
binary WebSocket carrying MessagePack frames (see protocol.py).
Both carry the X-App-Id and X-Chat-Name application headers.
"""

import asyncio
import logging
from urllib.parse import urlsplit, urlunsplit

import httpx
import websockets
from websockets.asyncio.client import ClientConnection, connect

from chat_sync.config import (
    HEADER_APP_ID,
    HEADER_CHAT_NAME,
    REGISTER_PATH,
    REGISTRATION_HTTP_TIMEOUT_SECONDS,
    SYNC_PATH,
    SYNC_TIMEOUT_SECONDS,
)
from chat_sync.errors import NetworkError, ServerError, SyncTimeoutError
from chat_sync.location import Location
from chat_sync.protocol import (
    DeviceIdentity,
    DownloadEvent,
    UploadComplete,
    UploadItem,
    decode_download,
    encode_upload,
)
from chat_sync.transport.base import ChatTransport, RegistrationResult, SyncStream

logger = logging.getLogger(__name__)


def identity_headers(identity: DeviceIdentity) -> dict[str, str]:
    return {
        HEADER_APP_ID: str(identity.app_id),
        HEADER_CHAT_NAME: identity.chat_name,
    }


def http_url(server_uri: str, path: str) -> str:
    """Join server address and endpoint path, mapping ws(s) to http(s)."""
    parts = urlsplit(server_uri.rstrip("/"))
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path + path, "", ""))


def websocket_url(server_uri: str, path: str) -> str:
    """Join server address and endpoint path, mapping http(s) to ws(s)."""
    parts = urlsplit(server_uri.rstrip("/"))
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path + path, "", ""))


class WebSocketSyncStream(SyncStream):
    """Sync stream over an open WebSocket connection."""

    def __init__(self, ws: ClientConnection, url: str):
        self._ws = ws
        self._url = url

    async def send(self, item: UploadItem) -> None:
        await self._send_frame(encode_upload(item))

    async def complete(self) -> None:
        await self._send_frame(encode_upload(UploadComplete()))

    async def receive(self) -> DownloadEvent:
        try:
            data = await self._ws.recv()
        except websockets.exceptions.ConnectionClosed as e:
            raise NetworkError(f"Sync stream closed: {e}", endpoint=self._url) from e
        if isinstance(data, str):
            raise ServerError("Unexpected text frame on sync stream")
        return decode_download(data)

    async def close(self) -> None:
        await self._ws.close()

    async def _send_frame(self, frame: bytes) -> None:
        try:
            await self._ws.send(frame)
        except websockets.exceptions.ConnectionClosed as e:
            raise NetworkError(f"Sync stream closed: {e}", endpoint=self._url) from e


class WebSocketTransport(ChatTransport):
    """
    Transport talking to a relay server over HTTP and WebSocket.

    Features:
    - Unary registration (POST /chat/register)
    - Bidirectional binary sync stream (WS /chat/sync)
    """

    def __init__(
        self,
        timeout: float = REGISTRATION_HTTP_TIMEOUT_SECONDS,
        open_timeout: float = SYNC_TIMEOUT_SECONDS,
    ):
        self._timeout = timeout
        self._open_timeout = open_timeout

    @property
    def name(self) -> str:
        return "WebSocket"

    async def register(
        self,
        server_uri: str,
        identity: DeviceIdentity,
        location: Location,
    ) -> RegistrationResult:
        url = http_url(server_uri, REGISTER_PATH)
        payload = {
            "chat_name": identity.chat_name,
            "latitude": location.latitude,
            "longitude": location.longitude,
        }
        logger.debug("Registering %s at %s", identity.chat_name, url)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    url, json=payload, headers=identity_headers(identity)
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise ServerError(
                f"Registration rejected: {_error_detail(e.response)}",
                code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise SyncTimeoutError(f"Registration timed out: {e}", timeout=self._timeout) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Registration failed: {e}", endpoint=url) from e
        except ValueError as e:
            raise ServerError(f"Malformed registration response: {e}") from e

        if not isinstance(data, dict):
            raise ServerError("Malformed registration response: expected an object")
        return RegistrationResult(
            app_id=data.get("app_id", str(identity.app_id)),
            chat_name=data.get("chat_name", identity.chat_name),
            server_id=data.get("server_id", ""),
        )

    async def open_sync(self, server_uri: str, identity: DeviceIdentity) -> SyncStream:
        url = websocket_url(server_uri, SYNC_PATH)
        try:
            ws = await connect(
                url,
                additional_headers=identity_headers(identity),
                open_timeout=self._open_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(
                f"Timed out connecting to {url}", timeout=self._open_timeout
            ) from e
        except websockets.exceptions.InvalidStatus as e:
            raise ServerError(
                f"Sync connection rejected: {e}",
                code=e.response.status_code,
            ) from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise NetworkError(f"WebSocket connect failed: {e}", endpoint=url) from e

        logger.info("WebSocket connected to %s", url)
        return WebSocketSyncStream(ws, url)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.reason_phrase
