"""One-to-one bridge between a Twilio media stream and a transcription stream.

A ``SessionBridge`` owns both connections of a call. Audio flows inbound to
outbound, transcripts flow back and are logged. Whichever side goes away
first takes the other one down with it.

State machine::

    CONNECTING --outbound opened--> ACTIVE
    CONNECTING|ACTIVE --any close/error/shutdown--> CLOSING --> CLOSED

Audio that arrives while CONNECTING is dropped, not buffered.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from enum import Enum

from relay.channels import InboundChannel, OutboundConnection, OutboundConnector
from relay.codec import EventKind, MediaEvent, decode_inbound, decode_transcript, encode_outbound_audio
from relay.errors import (
    AuthenticationError,
    DecodeError,
    InboundClosed,
    InboundConnectionError,
    OutboundConnectionError,
    RelayConnectionError,
)

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


_TERMINATING = frozenset({SessionState.CLOSING, SessionState.CLOSED})


class SessionBridge:
    """Relays one inbound media stream to one backend connection."""

    def __init__(
        self,
        session_id: int,
        inbound: InboundChannel,
        connector: OutboundConnector,
        *,
        inbound_track: str | None = None,
    ) -> None:
        self.session_id = session_id
        self._inbound = inbound
        self._connector = connector
        self._inbound_track = inbound_track
        self._outbound: OutboundConnection | None = None
        self._outbound_ready = False
        self._state = SessionState.CONNECTING
        self._closed = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

        self.call_sid: str | None = None
        self.stream_sid: str | None = None
        self.frames_forwarded = 0
        self.frames_dropped = 0
        self.transcripts = 0

    def __repr__(self) -> str:
        return f"SessionBridge(id={self.session_id}, state={self._state.value})"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def outbound_ready(self) -> bool:
        return self._outbound_ready

    async def run(self) -> None:
        """Drive the session until both sides are closed."""

        if self._state is not SessionState.CONNECTING or self._tasks:
            return

        LOGGER.info("[session %s] Received connection from Twilio", self.session_id)
        self._tasks = [
            asyncio.create_task(
                self._guard(self._run_outbound(), "outbound"),
                name=f"session-{self.session_id}-outbound",
            ),
            asyncio.create_task(
                self._guard(self._run_inbound(), "inbound"),
                name=f"session-{self.session_id}-inbound",
            ),
        ]
        try:
            await self._closed.wait()
        finally:
            current = asyncio.current_task()
            for task in self._tasks:
                if task is not current and not task.done():
                    task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            if self._state is not SessionState.CLOSED:
                await self._teardown("session cancelled")

    async def close(self, reason: str = "shutdown requested") -> None:
        """Tear the session down from outside; safe to call repeatedly."""

        await self._teardown(reason)

    # Inbound side

    async def on_inbound_message(self, raw: str | bytes) -> None:
        if self._state in _TERMINATING:
            LOGGER.debug("[session %s] Dropping inbound frame after close", self.session_id)
            return

        try:
            event = decode_inbound(raw)
        except DecodeError as exc:
            LOGGER.warning("[session %s] Error processing Twilio message: %s", self.session_id, exc.detail)
            return

        if event.kind is EventKind.OTHER:
            self._note_control_event(event)
            return

        if not event.has_payload:
            return
        if self._inbound_track and event.track and event.track != self._inbound_track:
            return

        outbound = self._outbound
        if self._state is not SessionState.ACTIVE or outbound is None or not outbound.is_open:
            self.frames_dropped += 1
            if self.frames_dropped == 1:
                LOGGER.info(
                    "[session %s] Backend not connected yet; dropping audio until it is",
                    self.session_id,
                )
            return

        try:
            await outbound.send(encode_outbound_audio(event.payload))
        except OutboundConnectionError as exc:
            await self.on_outbound_error(exc)
            return
        self.frames_forwarded += 1

    async def on_inbound_closed(self, code: int | None = None) -> None:
        if self._state in _TERMINATING:
            return
        LOGGER.info(
            "[session %s] Twilio WebSocket closed%s",
            self.session_id,
            f" with code {code}" if code is not None else "",
        )
        await self._teardown("inbound closed")

    async def on_inbound_error(self, exc: Exception) -> None:
        if self._state in _TERMINATING:
            return
        LOGGER.error("[session %s] Error in Twilio WebSocket: %s", self.session_id, exc)
        await self._teardown("inbound error")

    # Outbound side

    async def on_outbound_opened(self) -> None:
        if self._state is not SessionState.CONNECTING:
            return
        self._state = SessionState.ACTIVE
        self._outbound_ready = True
        LOGGER.info("[session %s] Connected to Deepgram WebSocket for transcription", self.session_id)

    def on_outbound_message(self, raw: str | bytes) -> None:
        if self._state is SessionState.CLOSED:
            return

        try:
            event = decode_transcript(raw)
        except DecodeError as exc:
            LOGGER.warning("[session %s] Error processing Deepgram response: %s", self.session_id, exc.detail)
            return

        text = event.text
        if not text:
            return

        self.transcripts += 1
        LOGGER.info(
            "[session %s] Transcription text%s >> %s",
            self.session_id,
            " (interim)" if event.is_final is False else "",
            text,
        )

    async def on_outbound_closed(self, code: int | None, reason: str | None = None) -> None:
        if self._state in _TERMINATING:
            return
        self._outbound_ready = False
        LOGGER.info(
            "[session %s] Deepgram WebSocket closed with code %s%s",
            self.session_id,
            code,
            f": {reason}" if reason else "",
        )
        await self._teardown("outbound closed")

    async def on_outbound_error(self, exc: Exception) -> None:
        if self._state in _TERMINATING:
            return
        self._outbound_ready = False
        if isinstance(exc, AuthenticationError):
            LOGGER.error(
                "[session %s] AuthenticationError: %s\n%s",
                self.session_id,
                exc.detail,
                exc.remediation,
            )
        else:
            LOGGER.error(
                "[session %s] %s: Error connecting to Deepgram WebSocket: %s",
                self.session_id,
                type(exc).__name__,
                exc,
            )
        await self._teardown("outbound error")

    # Internals

    async def _run_inbound(self) -> None:
        while self._state not in _TERMINATING:
            try:
                raw = await self._inbound.receive()
            except InboundClosed as exc:
                await self.on_inbound_closed(exc.code)
                return
            except InboundConnectionError as exc:
                await self.on_inbound_error(exc)
                return
            await self.on_inbound_message(raw)

    async def _run_outbound(self) -> None:
        try:
            connection = await self._connector.open()
        except OutboundConnectionError as exc:
            await self.on_outbound_error(exc)
            return

        if self._state is not SessionState.CONNECTING:
            # Inbound went away while the handshake was in flight.
            await self._close_quietly(connection.close(), "outbound")
            return

        self._outbound = connection
        await self.on_outbound_opened()

        try:
            async for message in connection.messages():
                self.on_outbound_message(message)
        except OutboundConnectionError as exc:
            await self.on_outbound_error(exc)
            return

        await self.on_outbound_closed(connection.close_code, connection.close_reason)

    async def _guard(self, body: Awaitable[None], side: str) -> None:
        try:
            await body
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("[session %s] Unexpected failure on %s side", self.session_id, side)
            await self._teardown(f"{side} failure")

    async def _teardown(self, reason: str) -> None:
        if self._state in _TERMINATING:
            return

        self._state = SessionState.CLOSING
        self._outbound_ready = False
        LOGGER.debug("[session %s] Closing (%s)", self.session_id, reason)
        try:
            outbound = self._outbound
            if outbound is not None and outbound.is_open:
                await self._close_quietly(outbound.close(), "outbound")
            if self._inbound.is_open:
                await self._close_quietly(self._inbound.close(), "inbound")
        finally:
            self._state = SessionState.CLOSED
            self._closed.set()
            LOGGER.info(
                "[session %s] Session closed (%s): forwarded=%d dropped=%d transcripts=%d",
                self.session_id,
                reason,
                self.frames_forwarded,
                self.frames_dropped,
                self.transcripts,
            )

    async def _close_quietly(self, closing: Awaitable[None], side: str) -> None:
        try:
            await closing
        except (RelayConnectionError, OSError, RuntimeError) as exc:
            LOGGER.warning("[session %s] Closing %s connection failed: %s", self.session_id, side, exc)

    def _note_control_event(self, event: MediaEvent) -> None:
        if event.event == "start":
            self.call_sid = event.call_sid
            self.stream_sid = event.stream_sid
            LOGGER.info(
                "[session %s] Twilio stream started (callSid=%s, streamSid=%s)",
                self.session_id,
                event.call_sid,
                event.stream_sid,
            )
        elif event.event == "stop":
            LOGGER.info("[session %s] Twilio stream stopped", self.session_id)
        else:
            LOGGER.debug("[session %s] Ignoring Twilio event %r", self.session_id, event.event)
