"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi import WebSocket

if TYPE_CHECKING:  # pragma: no cover
    from relay.channels import OutboundConnector
    from relay.registry import SessionRegistry


@lru_cache(maxsize=1)
def _connector_factory() -> OutboundConnector:
    from integrations.deepgram import build_connector

    return build_connector()


def get_connector() -> OutboundConnector:
    return _connector_factory()


def get_registry(websocket: WebSocket) -> SessionRegistry:
    return websocket.app.state.registry
