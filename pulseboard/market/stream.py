"""SSE streaming endpoints for live ticks and feed status."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from .models import ConnectionState, SubscriptionHandlers, Tick
from .multiplexer import ConnectionMultiplexer

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering if proxied
}

# Ticks buffered per client; beyond this the oldest are dropped
MAX_BACKLOG = 1000


def create_stream_router(multiplexer: ConnectionMultiplexer) -> APIRouter:
    """Create the SSE router bound to the process-wide multiplexer.

    This factory pattern lets us inject the multiplexer without globals.
    """
    router = APIRouter(prefix="/api/stream", tags=["streaming"])

    @router.get("/ticks")
    async def stream_ticks(
        request: Request,
        tickers: str = Query(..., description="Comma-separated symbols, e.g. AAPL,MSFT"),
    ) -> StreamingResponse:
        """Live aggregates for the requested symbols, one SSE event per tick:

            data: {"ticker": "AAPL", "price": 190.5, "open": ..., ...}

        The subscription lives exactly as long as the client connection.
        """
        symbols = parse_tickers(tickers)
        if not symbols:
            raise HTTPException(status_code=400, detail="No tickers requested")
        return StreamingResponse(
            _tick_events(multiplexer, symbols, request),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @router.get("/status")
    async def stream_status(request: Request) -> StreamingResponse:
        """Feed status, pushed on every multiplexer state transition:

            event: status
            data: {"state": "authenticated", "live": true}
        """
        return StreamingResponse(
            _status_events(multiplexer, request),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return router


def parse_tickers(raw: str) -> list[str]:
    """Split, normalize and de-duplicate a comma-separated ticker list."""
    seen: list[str] = []
    for part in raw.split(","):
        symbol = part.strip().upper()
        if symbol and symbol not in seen:
            seen.append(symbol)
    return seen


def status_payload(state: ConnectionState) -> dict:
    return {"state": state.value, "live": state is ConnectionState.AUTHENTICATED}


async def _tick_events(
    multiplexer: ConnectionMultiplexer,
    symbols: list[str],
    request: Request,
    poll_interval: float = 0.5,
) -> AsyncGenerator[str, None]:
    """Subscribe for the client's lifetime and relay each tick as an SSE event."""
    # Tell the client to retry after 1 second if the connection drops
    yield "retry: 1000\n\n"

    queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=MAX_BACKLOG)

    def on_message(tick: Tick) -> None:
        if queue.full():
            queue.get_nowait()  # Slow client: drop the oldest tick
        queue.put_nowait(tick.to_dict())

    handlers = SubscriptionHandlers(
        on_message=on_message,
        on_error=lambda error: logger.debug("Tick stream error for %s: %s", symbols, error),
    )
    unsubscribers = [multiplexer.subscribe(symbol, handlers) for symbol in symbols]
    client_ip = request.client.host if request.client else "unknown"
    logger.info("SSE tick client connected: %s (%s)", client_ip, ",".join(symbols))

    try:
        while True:
            if await request.is_disconnected():
                logger.info("SSE tick client disconnected: %s", client_ip)
                break
            try:
                payload = await asyncio.wait_for(queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
            yield f"data: {json.dumps(payload)}\n\n"
    except asyncio.CancelledError:
        logger.info("SSE tick stream cancelled for: %s", client_ip)
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()


async def _status_events(
    multiplexer: ConnectionMultiplexer,
    request: Request,
    poll_interval: float = 0.5,
) -> AsyncGenerator[str, None]:
    """Emit the current feed state, then one event per transition."""
    yield "retry: 1000\n\n"

    queue: asyncio.Queue[ConnectionState] = asyncio.Queue()
    remove = multiplexer.add_state_listener(queue.put_nowait)
    queue.put_nowait(multiplexer.state)

    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                state = await asyncio.wait_for(queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
            yield f"event: status\ndata: {json.dumps(status_payload(state))}\n\n"
    except asyncio.CancelledError:
        logger.info("SSE status stream cancelled")
    finally:
        remove()
