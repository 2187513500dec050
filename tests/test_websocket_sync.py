"""
test_websocket_sync.py - Tests for the WebSocket sync stream.

The stream and the connect step are first exercised against fake
connections, then whole sessions run against the relay app served
by uvicorn on a local port.
"""

import asyncio
import os
import shutil
import socket
import tempfile
import threading
import time
import uuid

import pytest
import uvicorn
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, InvalidStatus
from websockets.http11 import Response

from chat_sync import ChatStore, RequestProcessor, StaticLocationProvider
from chat_sync.errors import NetworkError, ServerError, SyncTimeoutError
from chat_sync.protocol import (
    DeviceIdentity,
    DownloadComplete,
    DownloadError,
    SyncStart,
    UploadComplete,
    decode_upload,
    encode_download,
)
from chat_sync.relay.hub import RelayHub
from chat_sync.relay.server import app, get_hub
from chat_sync.requests import ErrorResponse, SynchronizeRequest, SynchronizeResponse
from chat_sync.transport import websocket_transport
from chat_sync.transport.websocket_transport import WebSocketSyncStream, WebSocketTransport


IDENTITY = DeviceIdentity(app_id=uuid.UUID("11111111-1111-4111-8111-111111111111"), chat_name="alice")
URL = "ws://relay.test/chat/sync"
PROXY_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy")


class FakeConnection:
    """Stands in for a websockets ClientConnection."""

    def __init__(self, frames=(), closed=False):
        self.frames = list(frames)
        self.sent = []
        self.closed = closed
        self.close_calls = 0

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.sent.append(data)

    async def recv(self):
        if self.closed or not self.frames:
            raise ConnectionClosedError(None, None)
        return self.frames.pop(0)

    async def close(self):
        self.close_calls += 1
        self.closed = True


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestWebSocketSyncStream:

    def test_frames_are_binary_upload_events(self):
        conn = FakeConnection()
        stream = WebSocketSyncStream(conn, URL)

        asyncio.run(stream.send(SyncStart(last_seq_num=4)))
        asyncio.run(stream.complete())

        assert [decode_upload(frame) for frame in conn.sent] == [
            SyncStart(last_seq_num=4),
            UploadComplete(),
        ]

    def test_receive_decodes_download_frames(self):
        conn = FakeConnection(frames=[
            encode_download(DownloadError(code=401, message="Unknown device")),
            encode_download(DownloadComplete()),
        ])
        stream = WebSocketSyncStream(conn, URL)

        assert asyncio.run(stream.receive()) == DownloadError(code=401, message="Unknown device")
        assert asyncio.run(stream.receive()) == DownloadComplete()

    def test_closed_connection_on_send_becomes_network_error(self):
        stream = WebSocketSyncStream(FakeConnection(closed=True), URL)

        with pytest.raises(NetworkError) as excinfo:
            asyncio.run(stream.send(SyncStart(last_seq_num=0)))

        assert excinfo.value.context["endpoint"] == URL

        with pytest.raises(NetworkError):
            asyncio.run(stream.complete())

    def test_closed_connection_on_receive_becomes_network_error(self):
        stream = WebSocketSyncStream(FakeConnection(closed=True), URL)

        with pytest.raises(NetworkError):
            asyncio.run(stream.receive())

    def test_text_frame_is_rejected(self):
        stream = WebSocketSyncStream(FakeConnection(frames=["download_complete"]), URL)

        with pytest.raises(ServerError) as excinfo:
            asyncio.run(stream.receive())

        assert "text frame" in excinfo.value.message

    def test_close_closes_connection(self):
        conn = FakeConnection()

        asyncio.run(WebSocketSyncStream(conn, URL).close())

        assert conn.close_calls == 1


class TestOpenSync:

    def use_connect(self, monkeypatch, conn=None, error=None):
        seen = {}

        async def fake_connect(url, **kwargs):
            seen["url"] = url
            seen.update(kwargs)
            if error is not None:
                raise error
            return conn

        monkeypatch.setattr(websocket_transport, "connect", fake_connect)
        return seen

    def open_sync(self, server_uri="http://relay.test/base"):
        transport = WebSocketTransport(open_timeout=2.5)
        return asyncio.run(transport.open_sync(server_uri, IDENTITY))

    def test_connect_carries_identity_headers(self, monkeypatch):
        conn = FakeConnection()
        seen = self.use_connect(monkeypatch, conn=conn)

        stream = self.open_sync()

        assert isinstance(stream, WebSocketSyncStream)
        assert seen == {
            "url": "ws://relay.test/base/chat/sync",
            "additional_headers": {"X-App-Id": str(IDENTITY.app_id), "X-Chat-Name": "alice"},
            "open_timeout": 2.5,
        }

    def test_secure_address_maps_to_wss(self, monkeypatch):
        seen = self.use_connect(monkeypatch, conn=FakeConnection())

        self.open_sync("https://relay.test")

        assert seen["url"] == "wss://relay.test/chat/sync"

    def test_rejected_handshake_becomes_server_error(self, monkeypatch):
        rejection = InvalidStatus(Response(403, "Forbidden", Headers()))
        self.use_connect(monkeypatch, error=rejection)

        with pytest.raises(ServerError) as excinfo:
            self.open_sync()

        assert excinfo.value.code == 403

    def test_refused_connection_becomes_network_error(self, monkeypatch):
        self.use_connect(monkeypatch, error=ConnectionRefusedError("connection refused"))

        with pytest.raises(NetworkError) as excinfo:
            self.open_sync()

        assert not isinstance(excinfo.value, SyncTimeoutError)
        assert excinfo.value.context["endpoint"] == "ws://relay.test/base/chat/sync"

    def test_handshake_timeout_becomes_sync_timeout(self, monkeypatch):
        self.use_connect(monkeypatch, error=asyncio.TimeoutError())

        with pytest.raises(SyncTimeoutError):
            self.open_sync()


class TestSyncOverWebSocket:
    """Sessions against the relay app on a real socket."""

    def setup_method(self):
        self.saved_env = {name: os.environ.pop(name) for name in PROXY_VARS if name in os.environ}
        self.tmpdir = tempfile.mkdtemp()
        self.hub = RelayHub(server_id="relay-ws")
        app.dependency_overrides[get_hub] = lambda: self.hub
        self.devices = []

        self.port = free_port()
        self.server_uri = f"http://127.0.0.1:{self.port}"
        self.server = uvicorn.Server(
            uvicorn.Config(app, host="127.0.0.1", port=self.port, log_level="warning")
        )
        self.thread = threading.Thread(target=self.server.run, daemon=True)
        self.thread.start()

        deadline = time.monotonic() + 10
        while not self.server.started:
            if time.monotonic() > deadline or not self.thread.is_alive():
                raise RuntimeError("Relay server did not start")
            time.sleep(0.05)

    def teardown_method(self):
        self.server.should_exit = True
        self.thread.join(timeout=10)
        app.dependency_overrides.clear()
        for device in self.devices:
            device.store.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)
        os.environ.update(self.saved_env)

    def device(self, name):
        processor = RequestProcessor(
            ChatStore(os.path.join(self.tmpdir, f"{name}.db")),
            WebSocketTransport(timeout=5.0, open_timeout=5.0),
            StaticLocationProvider(45.76, 4.84),
            sync_timeout=5.0,
        )
        self.devices.append(processor)
        asyncio.run(processor.register(self.server_uri, name))
        return processor

    @staticmethod
    def sync(device):
        return asyncio.run(device.process(SynchronizeRequest()))

    def test_message_travels_between_devices(self):
        alice = self.device("alice")
        bob = self.device("bob")
        posted = alice.post_message("general", "hi").message

        response = self.sync(alice)

        assert isinstance(response, SynchronizeResponse)
        assert response.result.messages_sent == 1
        assert alice.store.get_message(posted.id).seq_num == 1
        assert alice.store.count_unsent_messages() == 0
        assert alice.store.get_last_seq_num() == 1

        assert isinstance(self.sync(bob), SynchronizeResponse)
        received = bob.store.get_messages("general")
        assert [(m.text, m.sender, m.seq_num) for m in received] == [("hi", "alice", 1)]
        assert bob.store.get_peer("alice").latitude == 45.76

    def test_unknown_device_gets_error_frame(self):
        async def attempt():
            stream = await WebSocketTransport().open_sync(self.server_uri, IDENTITY)
            try:
                return await stream.receive()
            finally:
                await stream.close()

        event = asyncio.run(attempt())

        assert isinstance(event, DownloadError)
        assert event.code == 401

    def test_unrouted_path_is_rejected_at_handshake(self):
        with pytest.raises(ServerError) as excinfo:
            asyncio.run(WebSocketTransport().open_sync(f"{self.server_uri}/nowhere", IDENTITY))

        assert excinfo.value.code == 403

    def test_relay_gone_gives_error_response(self):
        alice = self.device("alice")
        alice.post_message("general", "hi")
        self.server.should_exit = True
        self.thread.join(timeout=10)

        response = self.sync(alice)

        assert isinstance(response, ErrorResponse)
        assert response.response_code == 0
        assert alice.store.count_unsent_messages() == 1
