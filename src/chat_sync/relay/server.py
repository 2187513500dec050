import os
import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from chat_sync.config import (
    ENV_RELAY_ID,
    HEADER_APP_ID,
    HEADER_CHAT_NAME,
    HEALTH_PATH,
    REGISTER_PATH,
    SYNC_PATH,
)
from chat_sync.errors import ServerError
from chat_sync.location import Location
from chat_sync.metrics import HealthChecker, get_registry
from chat_sync.protocol import (
    DeviceIdentity,
    DownloadComplete,
    DownloadError,
    UploadComplete,
    decode_upload,
    encode_download,
)
from chat_sync.relay.hub import RelayHub

logger = logging.getLogger("chat_sync.relay")


class RegisterBody(BaseModel):
    chat_name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class RegisterAnswer(BaseModel):
    app_id: str
    chat_name: str
    server_id: str


# Global configuration
SERVER_ID = os.environ.get(ENV_RELAY_ID, "relay-001")

app = FastAPI(title="Chat Sync Relay")

_hub = RelayHub(server_id=SERVER_ID)

_health = HealthChecker()
_health.register_check("memory", HealthChecker.check_memory)
_health.register_check("disk", HealthChecker.check_disk)


def get_hub() -> RelayHub:
    return _hub


def _parse_app_id(value: Optional[str]) -> UUID:
    try:
        return UUID(value or "")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {HEADER_APP_ID} header"
        )


# Global Exception Handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


@app.get(HEALTH_PATH)
async def health_check(hub: RelayHub = Depends(get_hub)):
    result = _health.check_all()
    return {
        "status": "ok" if result.healthy else "degraded",
        "service": "chat-relay",
        "server_id": hub.server_id,
        "last_seq_num": hub.last_seq_num,
        "checks": result.checks,
    }


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    return get_registry().export_prometheus()


@app.post(REGISTER_PATH, response_model=RegisterAnswer)
async def register(
    body: RegisterBody,
    hub: RelayHub = Depends(get_hub),
    x_app_id: Optional[str] = Header(None, alias=HEADER_APP_ID),
    x_chat_name: Optional[str] = Header(None, alias=HEADER_CHAT_NAME),
):
    """Register a device under a chat name."""
    app_id = _parse_app_id(x_app_id)
    if x_chat_name is not None and x_chat_name != body.chat_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{HEADER_CHAT_NAME} header does not match the body"
        )

    try:
        result = hub.register(
            DeviceIdentity(app_id=app_id, chat_name=body.chat_name),
            Location(body.latitude, body.longitude),
        )
    except ServerError as e:
        logger.warning(f"Registration of {body.chat_name!r} rejected: {e.message}")
        raise HTTPException(status_code=e.code or 400, detail=e.message)

    return RegisterAnswer(
        app_id=result.app_id,
        chat_name=result.chat_name,
        server_id=result.server_id,
    )


@app.websocket(SYNC_PATH)
async def sync(websocket: WebSocket, hub: RelayHub = Depends(get_hub)):
    """
    One sync stream: read uploads until upload_complete, then send
    the downloads followed by download_complete.

    Protocol violations and unknown devices get an error frame.
    """
    await websocket.accept()
    try:
        try:
            identity = DeviceIdentity(
                app_id=UUID(websocket.headers.get(HEADER_APP_ID, "")),
                chat_name=websocket.headers.get(HEADER_CHAT_NAME, ""),
            )
        except ValueError:
            raise ServerError(f"Invalid {HEADER_APP_ID} header", code=400)

        session = hub.open_session(identity)
        while True:
            event = decode_upload(await websocket.receive_bytes())
            session.accept(event)
            if isinstance(event, UploadComplete):
                break

        items = session.downloads()
        for item in items:
            await websocket.send_bytes(encode_download(item))
        await websocket.send_bytes(encode_download(DownloadComplete()))
        logger.info(f"Sync with {identity.chat_name} sent {len(items)} items")

    except ServerError as e:
        logger.warning(f"Sync rejected: {e.message}")
        await websocket.send_bytes(
            encode_download(DownloadError(code=e.code or 400, message=e.message))
        )
    except WebSocketDisconnect:
        logger.info("Device disconnected before upload completion")
        return

    await websocket.close()
