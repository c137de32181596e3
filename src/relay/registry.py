"""Process-wide set of live sessions, used for ids and bulk shutdown."""

from __future__ import annotations

import asyncio
import itertools
import logging

from relay.bridge import SessionBridge
from relay.channels import InboundChannel, OutboundConnector

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """Tracks active bridges for the listener.

    Note: This is a single-process registry. Sessions are never shared
    between workers.
    """

    def __init__(self, *, inbound_track: str | None = None) -> None:
        self._ids = itertools.count(1)
        self._sessions: dict[int, SessionBridge] = {}
        self._accepting = True
        self._inbound_track = inbound_track

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[SessionBridge]:
        return list(self._sessions.values())

    def open_session(self, inbound: InboundChannel, connector: OutboundConnector) -> SessionBridge:
        if not self._accepting:
            raise RuntimeError("Listener is shutting down; not accepting new sessions")

        bridge = SessionBridge(
            next(self._ids),
            inbound,
            connector,
            inbound_track=self._inbound_track,
        )
        self._sessions[bridge.session_id] = bridge
        return bridge

    def release(self, bridge: SessionBridge) -> None:
        self._sessions.pop(bridge.session_id, None)

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        """Stop accepting, close every active session and wait for them."""

        self._accepting = False
        bridges = self.sessions()
        if not bridges:
            return

        LOGGER.info("Closing %d active session(s)", len(bridges))
        closing = [
            asyncio.create_task(bridge.close("process shutdown"), name=f"shutdown-session-{bridge.session_id}")
            for bridge in bridges
        ]
        done, pending = await asyncio.wait(closing, timeout=grace_seconds)

        for task in done:
            exc = task.exception()
            if exc is not None:
                LOGGER.error("Session close failed during shutdown: %r", exc)

        if pending:
            LOGGER.warning("%d session(s) did not close within %.1fs; cancelling", len(pending), grace_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for bridge in bridges:
            self.release(bridge)
