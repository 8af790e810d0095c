"""Transport backed by a real WebSocket (Massive / Polygon.io stocks feed)."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import websockets

from .interface import Transport

logger = logging.getLogger(__name__)

# Realtime needs a paid plan; the free tier only gets the 15-minute delayed feed
REALTIME_URL = "wss://socket.massive.com/stocks"
DELAYED_URL = "wss://delayed.massive.com/stocks"


class WebSocketTransport(Transport):
    """Thin adapter from a ``websockets`` client connection to Transport."""

    def __init__(self, connection: Any) -> None:
        self._connection = connection

    @classmethod
    async def open(cls, url: str) -> WebSocketTransport:
        """Connector: open a WebSocket to ``url``."""
        connection = await websockets.connect(url)
        logger.info("WebSocket opened: %s", url)
        return cls(connection)

    async def send(self, data: str) -> None:
        await self._connection.send(data)

    async def close(self) -> None:
        await self._connection.close()

    async def __aiter__(self) -> AsyncIterator[str]:
        # Ends on a clean close; raises ConnectionClosedError on an abnormal one
        async for message in self._connection:
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            yield message
