from __future__ import annotations

import json

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, InvalidStatus
from websockets.frames import Close
from websockets.http11 import Response
from websockets.protocol import State

import integrations.deepgram as deepgram
from config.settings import Settings
from integrations.deepgram import DeepgramConnection, DeepgramConnector, build_connector
from relay.errors import AuthenticationError, OutboundConnectionError


class FakeWebSocket:
    def __init__(self, messages=(), error: Exception | None = None) -> None:
        self.state = State.OPEN
        self.sent: list = []
        self.close_calls = 0
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._messages = list(messages)
        self._error = error

    async def send(self, message) -> None:
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""), True)
        self.sent.append(message)

    async def close(self) -> None:
        self.close_calls += 1
        self.state = State.CLOSED
        self.close_code = 1000
        self.close_reason = ""

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            yield message
        if self._error is not None:
            raise self._error


def _invalid_status(code: int) -> InvalidStatus:
    return InvalidStatus(Response(code, "nope", Headers()))


def test_open_sends_token_header(run, monkeypatch):
    captured = {}
    ws = FakeWebSocket()

    async def fake_connect(url, **kwargs):
        captured["url"] = url
        captured.update(kwargs)
        return ws

    monkeypatch.setattr(deepgram, "connect", fake_connect)
    connector = DeepgramConnector("wss://backend.test/listen", "secret", open_timeout=3.0)
    connection = run(connector.open())

    assert isinstance(connection, DeepgramConnection)
    assert connection.is_open
    assert captured["url"] == "wss://backend.test/listen"
    assert captured["additional_headers"] == {"Authorization": "Token secret"}
    assert captured["open_timeout"] == 3.0


def test_missing_api_key_is_an_authentication_error(run, monkeypatch):
    async def fail_connect(url, **kwargs):  # pragma: no cover - must not be reached
        raise AssertionError("should not dial without a key")

    monkeypatch.setattr(deepgram, "connect", fail_connect)
    with pytest.raises(AuthenticationError):
        run(DeepgramConnector("wss://backend.test/listen", None).open())


@pytest.mark.parametrize("status", [401, 403])
def test_rejected_handshake_maps_to_authentication_error(run, monkeypatch, status):
    async def reject(url, **kwargs):
        raise _invalid_status(status)

    monkeypatch.setattr(deepgram, "connect", reject)
    with pytest.raises(AuthenticationError) as info:
        run(DeepgramConnector("wss://backend.test/listen", "bad").open())
    assert info.value.status_code == status
    assert "DEEPGRAM_API_KEY" in info.value.remediation


def test_other_handshake_failures_are_generic(run, monkeypatch):
    async def reject(url, **kwargs):
        raise _invalid_status(500)

    monkeypatch.setattr(deepgram, "connect", reject)
    with pytest.raises(OutboundConnectionError) as info:
        run(DeepgramConnector("wss://backend.test/listen", "key").open())
    assert not isinstance(info.value, AuthenticationError)
    assert info.value.status_code == 500


def test_network_failures_are_generic(run, monkeypatch):
    async def refuse(url, **kwargs):
        raise ConnectionRefusedError(111, "Connection refused")

    monkeypatch.setattr(deepgram, "connect", refuse)
    with pytest.raises(OutboundConnectionError) as info:
        run(DeepgramConnector("wss://backend.test/listen", "key").open())
    assert not isinstance(info.value, AuthenticationError)


def test_messages_end_on_orderly_close(run):
    async def collect(connection):
        return [message async for message in connection.messages()]

    ws = FakeWebSocket(messages=["a", b"b"])
    assert run(collect(DeepgramConnection(ws))) == ["a", b"b"]


def test_abnormal_close_raises_connection_error(run):
    async def drain(connection):
        async for _ in connection.messages():
            pass

    ws = FakeWebSocket(messages=["a"], error=ConnectionClosedError(Close(1011, "internal"), None))
    with pytest.raises(OutboundConnectionError) as info:
        run(drain(DeepgramConnection(ws)))
    assert not isinstance(info.value, AuthenticationError)
    assert "1011" in info.value.detail


def test_unauthorized_close_reason_maps_to_authentication_error(run):
    async def drain(connection):
        async for _ in connection.messages():
            pass

    ws = FakeWebSocket(error=ConnectionClosedError(Close(1008, "401 Unauthorized"), None))
    with pytest.raises(AuthenticationError):
        run(drain(DeepgramConnection(ws)))


def test_send_after_close_raises_connection_error(run):
    ws = FakeWebSocket()
    ws.state = State.CLOSED
    with pytest.raises(OutboundConnectionError):
        run(DeepgramConnection(ws).send(b"\x00"))


def test_close_flushes_stream_and_is_idempotent(run):
    async def close_twice(connection):
        await connection.close()
        await connection.close()

    ws = FakeWebSocket()
    connection = DeepgramConnection(ws)
    run(close_twice(connection))

    assert ws.sent == [json.dumps({"type": "CloseStream"})]
    assert ws.close_calls == 1
    assert not connection.is_open
    assert connection.close_code == 1000


def test_build_connector_uses_settings():
    settings = Settings(
        _env_file=None,
        ws_url=None,
        deepgram_api_key="k",
        deepgram_base_url="wss://backend.test/listen",
        outbound_open_timeout=2.5,
    )
    connector = build_connector(settings)

    assert connector.url.startswith("wss://backend.test/listen?")
    assert "encoding=mulaw" in connector.url
    assert connector.auth_headers() == {"Authorization": "Token k"}
