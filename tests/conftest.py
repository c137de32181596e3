from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from relay.errors import InboundClosed, OutboundConnectionError  # noqa: E402

_END = object()


class FakeInbound:
    """In-memory Twilio side of a session."""

    def __init__(self) -> None:
        self._frames: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_calls = 0

    @property
    def is_open(self) -> bool:
        return not self.closed

    def feed(self, raw: str | bytes) -> None:
        self._frames.put_nowait(raw)

    def disconnect(self, code: int = 1000) -> None:
        self._frames.put_nowait(InboundClosed(code=code))

    def fail(self, exc: Exception) -> None:
        self._frames.put_nowait(exc)

    async def receive(self) -> str | bytes:
        item = await self._frames.get()
        if isinstance(item, Exception):
            self.closed = True
            raise item
        return item

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeConnection:
    """In-memory backend stream."""

    def __init__(self) -> None:
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._open = True
        self.sent: list[bytes] = []
        self.close_calls = 0
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.fail_sends = False

    @property
    def is_open(self) -> bool:
        return self._open

    def push(self, message: str | bytes) -> None:
        self._incoming.put_nowait(message)

    def remote_close(self, code: int = 1000, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason
        self._open = False
        self._incoming.put_nowait(_END)

    def fail(self, exc: Exception) -> None:
        self._incoming.put_nowait(exc)

    async def send(self, frame: bytes) -> None:
        if self.fail_sends or not self._open:
            self._open = False
            raise OutboundConnectionError("send on a dead connection")
        self.sent.append(frame)

    async def messages(self):
        while True:
            item = await self._incoming.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                self._open = False
                raise item
            yield item

    async def close(self) -> None:
        if not self._open:
            return
        self.close_calls += 1
        self._open = False
        self.close_code = 1000
        self._incoming.put_nowait(_END)


class FakeConnector:
    def __init__(
        self,
        connection: FakeConnection | None = None,
        *,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.connection = connection or FakeConnection()
        self.error = error
        self.gate = gate
        self.open_calls = 0

    async def open(self) -> FakeConnection:
        self.open_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.connection


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture()
def run():
    return asyncio.run
