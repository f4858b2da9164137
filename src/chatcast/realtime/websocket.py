"""WebSocket endpoint — the transport layer in front of the broadcast core.

Learn: Each client connects to /ws?token=JWT[&channels=a,b]. The handler:
1. Authenticates via JWT query param (required outside development)
2. Registers a connection with the broadcast service
3. Reads control frames from the client (subscribe / unsubscribe / ping)
4. Deregisters on disconnect

Event frames are *not* sent from this handler: the dispatcher's writer
task drains the connection's outbound queue through WebSocketTransport.
Both paths share one send lock so frames never interleave.
"""

import asyncio
import json

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from chatcast.broadcast.authorizer import AuthDecision
from chatcast.errors import BroadcastError, ResourceExhausted, TransportClosed

logger = structlog.get_logger()
router = APIRouter()

# Close codes (4000–4999 are application-defined)
CLOSE_AUTH_FAILED = 4001
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketTransport:
    """Transport adapter: writes frames to one Starlette WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()

    async def write_frame(self, connection_id: str, frame: str) -> None:
        await self._send(frame)

    async def send_json(self, data: dict) -> None:
        await self._send(json.dumps(data))

    async def _send(self, text: str) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise TransportClosed("websocket is not connected")
        async with self._send_lock:
            try:
                await self.websocket.send_text(text)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                raise TransportClosed(str(e)) from e


def _authenticate(websocket: WebSocket, config) -> str | None:
    """Return the principal, or None if the connection must be refused."""
    token = websocket.query_params.get("token")
    if not token:
        # Anonymous connections are a development convenience only.
        if config.environment == "development":
            return websocket.query_params.get("user_id", "anonymous")
        return None

    from chatcast.auth.jwt import TokenError, verify_token

    try:
        return str(verify_token(token, secret=config.jwt_secret)["sub"])
    except TokenError:
        return None


async def _subscribe(service, transport, connection_id: str, channel: str) -> None:
    try:
        decision = await service.on_subscribe_request(connection_id, channel)
    except BroadcastError as e:
        await transport.send_json(
            {"type": "error", "code": e.code, "channel": channel, "message": str(e)}
        )
        return

    if decision is AuthDecision.AUTHORIZED:
        await transport.send_json({"type": "subscription_succeeded", "channel": channel})
    else:
        await transport.send_json({"type": "subscription_denied", "channel": channel})


async def _handle_control(service, transport, connection_id: str, raw: str) -> None:
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError:
        await transport.send_json(
            {"type": "error", "code": "bad_frame", "message": "Frames must be JSON"}
        )
        return
    if not isinstance(msg, dict):
        await transport.send_json(
            {"type": "error", "code": "bad_frame", "message": "Frames must be objects"}
        )
        return

    kind = msg.get("type")
    channel = msg.get("channel") or ""
    if kind == "ping":
        await transport.send_json({"type": "pong"})
    elif kind == "subscribe":
        await _subscribe(service, transport, connection_id, channel)
    elif kind == "unsubscribe":
        service.on_unsubscribe_request(connection_id, channel)
        await transport.send_json({"type": "unsubscribed", "channel": channel})
    else:
        await transport.send_json(
            {"type": "error", "code": "unknown_type", "message": f"Unknown type: {kind}"}
        )


@router.websocket("/ws")
async def chat_websocket(websocket: WebSocket):
    """WebSocket endpoint for real-time chat events."""
    service = websocket.app.state.broadcast
    config = service.config

    # ── Authentication ──────────────────────────────────────
    principal = _authenticate(websocket, config)
    if principal is None:
        await websocket.close(code=CLOSE_AUTH_FAILED, reason="Authentication required")
        return

    await websocket.accept()
    transport = WebSocketTransport(websocket)

    try:
        connection_id = service.on_connection_opened(principal, transport)
    except ResourceExhausted:
        await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="Server at capacity")
        return

    structlog.contextvars.bind_contextvars(connection_id=connection_id)
    try:
        await transport.send_json(
            {"type": "connection_established", "connection_id": connection_id}
        )

        initial = websocket.query_params.get("channels", "")
        for channel in filter(None, (c.strip() for c in initial.split(","))):
            await _subscribe(service, transport, connection_id, channel)

        while True:
            raw = await websocket.receive_text()
            service.on_activity(connection_id)
            await _handle_control(service, transport, connection_id, raw)
    except (WebSocketDisconnect, TransportClosed):
        pass
    finally:
        service.on_connection_closed(connection_id)
        structlog.contextvars.unbind_contextvars("connection_id")
        if websocket.application_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError:
                pass
