"""Raw-protocol client for Deepgram-style streaming transcription."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Final

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, InvalidStatus, WebSocketException
from websockets.protocol import State

from config.settings import Settings, build_backend_url, get_settings
from relay.errors import AuthenticationError, OutboundConnectionError

LOGGER = logging.getLogger(__name__)

AUTH_STATUS_CODES: Final[frozenset[int]] = frozenset({401, 403})
CLOSE_STREAM_MESSAGE: Final[str] = json.dumps({"type": "CloseStream"})


def _looks_unauthorized(text: str | None) -> bool:
    return bool(text) and "401" in text


class DeepgramConnection:
    """A single open streaming connection."""

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws
        self._close_requested = False

    @property
    def is_open(self) -> bool:
        return self._ws.state is State.OPEN and not self._close_requested

    @property
    def close_code(self) -> int | None:
        return self._ws.close_code

    @property
    def close_reason(self) -> str | None:
        return self._ws.close_reason

    async def send(self, frame: bytes) -> None:
        try:
            await self._ws.send(frame)
        except ConnectionClosed as exc:
            raise _map_closed(exc) from exc

    async def messages(self) -> AsyncIterator[str | bytes]:
        try:
            async for message in self._ws:
                yield message
        except ConnectionClosedError as exc:
            raise _map_closed(exc) from exc

    async def close(self) -> None:
        if self._close_requested:
            return
        self._close_requested = True

        if self._ws.state is State.OPEN:
            # Ask the backend to flush pending results before the socket goes away.
            try:
                await self._ws.send(CLOSE_STREAM_MESSAGE)
            except ConnectionClosed:
                LOGGER.debug("Backend closed before CloseStream could be sent")
        await self._ws.close()


class DeepgramConnector:
    """Opens ``DeepgramConnection`` instances for a fixed URL and credential."""

    def __init__(
        self,
        url: str,
        api_key: str | None,
        *,
        open_timeout: float | None = None,
        ping_interval: float | None = 20,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._open_timeout = open_timeout
        self._ping_interval = ping_interval

    @property
    def url(self) -> str:
        return self._url

    def auth_headers(self) -> dict[str, str]:
        if not self._api_key:
            raise AuthenticationError("DEEPGRAM_API_KEY is not configured")
        return {"Authorization": f"Token {self._api_key}"}

    async def open(self) -> DeepgramConnection:
        headers = self.auth_headers()
        try:
            ws = await connect(
                self._url,
                additional_headers=headers,
                open_timeout=self._open_timeout,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in AUTH_STATUS_CODES:
                raise AuthenticationError(
                    f"Backend rejected credentials (HTTP {status})", status_code=status
                ) from exc
            raise OutboundConnectionError(
                f"Backend refused the connection (HTTP {status})", status_code=status
            ) from exc
        except (WebSocketException, OSError, TimeoutError) as exc:
            if _looks_unauthorized(str(exc)):
                raise AuthenticationError(str(exc), status_code=401) from exc
            raise OutboundConnectionError(f"Could not reach backend: {exc!r}") from exc

        return DeepgramConnection(ws)


def _map_closed(exc: ConnectionClosed) -> OutboundConnectionError:
    frame = exc.rcvd
    code = frame.code if frame is not None else None
    reason = frame.reason if frame is not None else ""
    if _looks_unauthorized(reason):
        return AuthenticationError(f"Backend closed the stream: {reason}")
    detail = f"Backend connection lost (code={code}{f', reason={reason}' if reason else ''})"
    return OutboundConnectionError(detail)


def build_connector(settings: Settings | None = None) -> DeepgramConnector:
    """Instantiate the configured backend connector."""

    settings = settings or get_settings()
    return DeepgramConnector(
        build_backend_url(settings),
        settings.deepgram_api_key,
        open_timeout=settings.outbound_open_timeout,
    )
