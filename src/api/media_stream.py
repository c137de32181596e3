"""Twilio Media Streams listener.

Every accepted WebSocket becomes exactly one ``SessionBridge``; the route
only returns once that session is fully closed.
"""

from __future__ import annotations

import logging
from typing import Final

from fastapi import APIRouter, Depends, Request, WebSocket
from starlette.websockets import WebSocketState

from api.dependencies import get_connector, get_registry
from relay.channels import OutboundConnector
from relay.errors import InboundClosed, InboundConnectionError
from relay.registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

# Close codes used towards Twilio.
WS_NORMAL_CLOSURE: Final[int] = 1000
WS_ABNORMAL_CLOSURE: Final[int] = 1006
WS_SERVICE_RESTART: Final[int] = 1012

router = APIRouter(tags=["relay"])


class TwilioWebSocketChannel:
    """Adapts a Starlette WebSocket to the bridge's inbound channel."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._close_requested = False
        self._disconnected = False

    @property
    def is_open(self) -> bool:
        return (
            not self._close_requested
            and not self._disconnected
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def receive(self) -> str | bytes:
        try:
            message = await self._ws.receive()
        except (RuntimeError, OSError) as exc:
            self._disconnected = True
            raise InboundConnectionError(str(exc)) from exc

        if message["type"] == "websocket.disconnect":
            self._disconnected = True
            code = message.get("code")
            if code == WS_ABNORMAL_CLOSURE:
                raise InboundConnectionError("Twilio connection dropped without a close frame")
            raise InboundClosed(code=code)

        text = message.get("text")
        if text is not None:
            return text
        data = message.get("bytes")
        if data is not None:
            return data
        raise InboundConnectionError(f"Unexpected ASGI message: {message['type']}")

    async def close(self, code: int = WS_NORMAL_CLOSURE) -> None:
        if not self.is_open:
            self._close_requested = True
            return
        self._close_requested = True
        try:
            await self._ws.close(code=code)
        except (RuntimeError, OSError) as exc:
            # Peer disconnected between the state check and the close frame.
            LOGGER.debug("Inbound close raced with disconnect: %s", exc)


async def twilio_media_stream(
    websocket: WebSocket,
    connector: OutboundConnector = Depends(get_connector),
    registry: SessionRegistry = Depends(get_registry),
) -> None:
    if not registry.accepting:
        LOGGER.info("Refusing Twilio connection: shutting down")
        await websocket.close(code=WS_SERVICE_RESTART)
        return

    await websocket.accept()
    bridge = registry.open_session(TwilioWebSocketChannel(websocket), connector)
    try:
        await bridge.run()
    finally:
        registry.release(bridge)


@router.get("/health")
async def health(request: Request) -> dict:
    registry: SessionRegistry = request.app.state.registry
    return {
        "status": "ok",
        "active_sessions": registry.active_count,
        "accepting": registry.accepting,
    }
