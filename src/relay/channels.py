"""Capabilities the session bridge needs from each side of a call."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol


class InboundChannel(Protocol):
    """The telephony side of a session (one Twilio media stream)."""

    @property
    def is_open(self) -> bool:  # pragma: no cover - protocol stub
        ...

    async def receive(self) -> str | bytes:
        """Return the next frame.

        Raises ``InboundClosed`` on an orderly disconnect and
        ``InboundConnectionError`` on a transport failure.
        """

    async def close(self) -> None:
        """Request close. Must be a no-op when already closed."""


class OutboundConnection(Protocol):
    """An open duplex stream to the transcription backend."""

    @property
    def is_open(self) -> bool:  # pragma: no cover - protocol stub
        ...

    @property
    def close_code(self) -> int | None:  # pragma: no cover - protocol stub
        ...

    @property
    def close_reason(self) -> str | None:  # pragma: no cover - protocol stub
        ...

    async def send(self, frame: bytes) -> None:
        """Send one binary audio frame; raises ``OutboundConnectionError``."""

    def messages(self) -> AsyncIterator[str | bytes]:
        """Yield backend messages until the connection closes.

        Ends normally on an orderly close and raises
        ``OutboundConnectionError`` on an abnormal one.
        """

    async def close(self) -> None:
        """Request close. Must be a no-op when already closed."""


class OutboundConnector(Protocol):
    """Opens authenticated streaming connections to the backend."""

    async def open(self) -> OutboundConnection:
        """Raises ``AuthenticationError`` or ``OutboundConnectionError``."""
