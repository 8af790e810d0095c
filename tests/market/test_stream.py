"""Tests for the SSE streaming router."""

import asyncio
import json

import pytest
from fastapi import HTTPException

from pulseboard.market.models import ConnectionState
from pulseboard.market.stream import (
    _status_events,
    _tick_events,
    create_stream_router,
    parse_tickers,
    status_payload,
)


class FakeRequest:
    """Just enough of starlette's Request for the event generators."""

    client = None

    def __init__(self) -> None:
        self.disconnected = False

    async def is_disconnected(self) -> bool:
        return self.disconnected


def _data(event: str) -> dict:
    return json.loads(event.split("data: ", 1)[1])


class TestHelpers:
    """Unit tests for parse_tickers and status_payload."""

    def test_parse_tickers(self):
        assert parse_tickers(" aapl,MSFT,,aapl , tsla") == ["AAPL", "MSFT", "TSLA"]

    def test_parse_empty(self):
        assert parse_tickers(" , ") == []

    def test_status_payload(self):
        assert status_payload(ConnectionState.AUTHENTICATED) == {"state": "authenticated", "live": True}
        assert status_payload(ConnectionState.RECONNECTING) == {"state": "reconnecting", "live": False}


@pytest.mark.asyncio
class TestRouter:
    """Tests for create_stream_router."""

    async def test_routes(self, make_multiplexer):
        router = create_stream_router(make_multiplexer())
        assert {route.path for route in router.routes} == {"/api/stream/ticks", "/api/stream/status"}

    async def test_empty_ticker_list_rejected(self, make_multiplexer):
        """Test that a request with no usable symbols is a 400."""
        mux = make_multiplexer()
        router = create_stream_router(mux)
        endpoint = next(r.endpoint for r in router.routes if r.path.endswith("/ticks"))

        with pytest.raises(HTTPException) as exc_info:
            await endpoint(FakeRequest(), tickers=" , ")

        assert exc_info.value.status_code == 400
        assert mux.symbols() == []


@pytest.mark.asyncio
class TestTickEvents:
    """Tests for the per-client tick generator."""

    async def test_relays_ticks_and_unsubscribes(self, connector, make_multiplexer, settle):
        """Test the full lifetime of one SSE client."""
        mux = make_multiplexer()
        request = FakeRequest()
        events = _tick_events(mux, ["AAPL"], request, poll_interval=0.02)

        assert await events.__anext__() == "retry: 1000\n\n"

        pending = asyncio.ensure_future(events.__anext__())
        await settle(0.05)
        assert mux.symbols() == ["AAPL"]
        assert mux.is_connected()

        connector.last.feed({"ev": "A", "sym": "AAPL", "c": 190.5, "o": 190.0, "e": 1707580800000})
        event = await asyncio.wait_for(pending, timeout=1.0)
        assert event.endswith("\n\n")
        payload = _data(event)
        assert payload["ticker"] == "AAPL"
        assert payload["price"] == 190.5

        request.disconnected = True
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(events.__anext__(), timeout=1.0)
        await settle()

        assert mux.symbols() == []
        assert connector.last.directives()[-1] == {"action": "unsubscribe", "params": "A.AAPL"}
        await mux.disconnect()

    async def test_clients_share_upstream_subscription(self, connector, make_multiplexer, settle):
        """Test that two SSE clients on one symbol cause a single subscribe directive."""
        mux = make_multiplexer()
        first = _tick_events(mux, ["MSFT"], FakeRequest(), poll_interval=0.02)
        second = _tick_events(mux, ["MSFT"], FakeRequest(), poll_interval=0.02)
        for events in (first, second):
            await events.__anext__()

        pending = [asyncio.ensure_future(events.__anext__()) for events in (first, second)]
        await settle(0.05)
        connector.last.feed({"ev": "A", "sym": "MSFT", "c": 410.0})
        results = await asyncio.wait_for(asyncio.gather(*pending), timeout=1.0)

        assert [_data(event)["price"] for event in results] == [410.0, 410.0]
        assert connector.last.directives() == [{"action": "subscribe", "params": "A.MSFT"}]
        for events in (first, second):
            await events.aclose()
        await mux.disconnect()


@pytest.mark.asyncio
class TestStatusEvents:
    """Tests for the feed status generator."""

    async def test_reports_transitions(self, make_multiplexer):
        mux = make_multiplexer()
        request = FakeRequest()
        events = _status_events(mux, request, poll_interval=0.02)

        assert await events.__anext__() == "retry: 1000\n\n"
        first = await asyncio.wait_for(events.__anext__(), timeout=1.0)
        assert first.startswith("event: status\n")
        assert _data(first) == {"state": "disconnected", "live": False}

        await mux.connect()
        states = []
        for _ in range(3):
            event = await asyncio.wait_for(events.__anext__(), timeout=1.0)
            states.append(_data(event)["state"])
        assert states == ["connecting", "awaiting_auth", "authenticated"]

        request.disconnected = True
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(events.__anext__(), timeout=1.0)
        await mux.disconnect()
