"""Entry point for the Twilio to Deepgram transcription relay."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import socket
from collections.abc import Iterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from api.media_stream import router as relay_router
from api.media_stream import twilio_media_stream
from config.settings import Settings, get_settings
from relay.errors import StartupError
from relay.registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    registry = SessionRegistry(inbound_track=settings.inbound_track)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        LOGGER.info("Shutting down. Closing WebSocket server...")
        await registry.shutdown(settings.shutdown_grace_seconds)
        LOGGER.info("Server closed.")

    app = FastAPI(
        title="Twilio Transcribe Relay",
        description="Relays Twilio Media Streams audio to a streaming transcription backend.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.include_router(relay_router)
    app.add_api_websocket_route(
        settings.media_stream_path,
        twilio_media_stream,
        name="twilio_media_stream",
    )
    return app


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind the listening socket up front so bind failures are reported as ``StartupError``."""

    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as exc:
        sock.close()
        raise StartupError(f"Could not bind {host}:{port}: {exc.strerror or exc}") from exc
    sock.set_inheritable(True)
    return sock


class RelayServer(uvicorn.Server):
    """uvicorn server that drains on SIGINT/SIGTERM and then returns normally.

    The signal only sets ``should_exit``; it is not re-raised afterwards, so a
    termination request ends with exit status 0.
    """

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.handle_exit, sig, None)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not the main thread, or a platform without loop signal support.
                LOGGER.debug("Cannot install handler for %s", sig.name)
                continue
            installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)


async def serve(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    sock = bind_socket(settings.listen_host, settings.listen_port)

    app = create_app(settings)
    config = uvicorn.Config(
        app,
        log_config=None,
        log_level=settings.log_level.lower(),
        lifespan="on",
    )
    server = RelayServer(config)

    LOGGER.info(
        "WebSocket server listening on ws://%s:%s%s",
        settings.listen_host,
        settings.listen_port,
        settings.media_stream_path,
    )
    await server.serve(sockets=[sock])


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    try:
        asyncio.run(serve(settings))
    except StartupError as exc:
        LOGGER.critical("%s", exc.detail)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
