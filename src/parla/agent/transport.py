"""
Realtime transports — the byte pipe under an AgentSession.

A transport moves already-encoded text frames. It knows nothing about
turns, states or events. Failures are normalized:

- open() failing      → AgentConnectionError(REFUSED)
- recv()/send() after the peer went away → TransportError(DROPPED)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from parla.core.config import RealtimeConfig
from parla.core.errors import (
    AgentConnectionError,
    ConnectionReason,
    TransportError,
    TransportReason,
)

logger = logging.getLogger(__name__)


class RealtimeTransport(ABC):
    """Bidirectional text-frame channel to the remote model."""

    @abstractmethod
    async def open(self, model: str | None = None) -> None:
        ...

    @abstractmethod
    async def send(self, message: str) -> None:
        ...

    @abstractmethod
    async def recv(self) -> str | bytes:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class WebSocketTransport(RealtimeTransport):
    """WebSocket transport for OpenAI-Realtime-style endpoints."""

    def __init__(self, cfg: RealtimeConfig) -> None:
        self._cfg = cfg
        self._ws: ClientConnection | None = None

    async def open(self, model: str | None = None) -> None:
        if not self._cfg.api_key:
            raise AgentConnectionError(
                ConnectionReason.REFUSED, "OPENAI_API_KEY not set"
            )
        uri = f"{self._cfg.url}?model={model or self._cfg.model}"
        try:
            self._ws = await connect(
                uri,
                additional_headers={
                    "Authorization": f"Bearer {self._cfg.api_key}",
                    "OpenAI-Beta": "realtime=v1",
                },
                ping_interval=self._cfg.ping_interval,
                ping_timeout=self._cfg.ping_timeout,
                max_size=None,
            )
        except (InvalidHandshake, OSError) as e:
            raise AgentConnectionError(ConnectionReason.REFUSED, str(e)) from e
        logger.info("Realtime WebSocket opened (%s)", uri)

    async def send(self, message: str) -> None:
        if self._ws is None:
            raise TransportError(TransportReason.DROPPED, "transport not open")
        try:
            await self._ws.send(message)
        except ConnectionClosed as e:
            raise TransportError(TransportReason.DROPPED, str(e)) from e

    async def recv(self) -> str | bytes:
        if self._ws is None:
            raise TransportError(TransportReason.DROPPED, "transport not open")
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportError(TransportReason.DROPPED, str(e)) from e

    async def close(self) -> None:
        if self._ws is None:
            return
        ws, self._ws = self._ws, None
        try:
            await ws.close()
        except Exception as e:
            logger.debug("Error closing realtime WebSocket: %s", e)
        logger.info("Realtime WebSocket closed")
