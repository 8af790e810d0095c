"""Fixtures for market data tests.

Provides an in-memory Transport and connector so the multiplexer can be
driven frame by frame without a network.
"""

import asyncio
import json

import pytest

from pulseboard.market.interface import Transport
from pulseboard.market.multiplexer import ConnectionMultiplexer

AUTH_SUCCESS = {"ev": "status", "status": "auth_success", "message": "authenticated"}


class FakeTransport(Transport):
    """Records outbound frames; tests push inbound frames with feed()."""

    def __init__(self, auto_auth: bool = True) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._auto_auth = auto_auth
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        message = json.loads(data)
        self.sent.append(message)
        if self._auto_auth and message.get("action") == "auth":
            self.feed(AUTH_SUCCESS)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def feed(self, payload) -> None:
        self._inbox.put_nowait(json.dumps(payload))

    def feed_raw(self, text: str) -> None:
        self._inbox.put_nowait(text)

    def drop(self, error: Exception | None = None) -> None:
        """Simulate the server going away abnormally."""
        self.closed = True
        self._inbox.put_nowait(error or ConnectionError("connection reset by peer"))

    def directives(self) -> list[dict]:
        return [m for m in self.sent if m.get("action") != "auth"]

    async def __aiter__(self):
        while True:
            item = await self._inbox.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class FakeConnector:
    """Connector that hands out FakeTransports and records when it was called."""

    def __init__(self) -> None:
        self.auto_auth = True
        self.fail = False
        self.transports: list[FakeTransport] = []
        self.call_times: list[float] = []

    async def __call__(self, url: str) -> FakeTransport:
        self.call_times.append(asyncio.get_running_loop().time())
        if self.fail:
            raise OSError("connection refused")
        transport = FakeTransport(auto_auth=self.auto_auth)
        self.transports.append(transport)
        return transport

    @property
    def calls(self) -> int:
        return len(self.call_times)

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def make_multiplexer(connector):
    """Build a multiplexer wired to the fake connector."""

    def factory(**kwargs) -> ConnectionMultiplexer:
        kwargs.setdefault("reconnect_delay", 0.02)
        kwargs.setdefault("auth_timeout", 1.0)
        kwargs.setdefault("connector", connector)
        return ConnectionMultiplexer("test-key", "wss://feed.test/stocks", **kwargs)

    return factory


@pytest.fixture
def settle():
    """Let background reader/writer/connect tasks run."""

    async def _settle(seconds: float = 0.02) -> None:
        await asyncio.sleep(seconds)

    return _settle
