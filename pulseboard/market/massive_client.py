"""Massive (Polygon.io) REST access, deduplicated through the CoalescingCache."""

from __future__ import annotations

import asyncio
import logging
from itertools import islice
from typing import Any, Callable

from .cache import CoalescingCache

logger = logging.getLogger(__name__)

# Cache lifetimes in seconds, per endpoint
PREV_CLOSE_TTL = 300
NEWS_TTL = 120
MARKET_STATUS_TTL = 60
SNAPSHOT_TTL = 30
AGGREGATES_TTL = 60
SEARCH_TTL = 300


class MassiveRestGateway:
    """Read-only REST calls for the dashboard, each resolved through the cache.

    Concurrent requests for the same endpoint and parameters share one
    upstream call, which matters on the free tier (5 requests/minute).
    Cache keys follow ``"<endpoint>:<params>"``.

    The Massive RESTClient is synchronous, so every call runs in a thread.
    """

    def __init__(self, api_key: str, cache: CoalescingCache, client: Any = None) -> None:
        self._api_key = api_key
        self._cache = cache
        self._client = client  # Lazy: created on first request

    async def get_previous_close(self, ticker: str) -> Any:
        ticker = ticker.upper().strip()
        return await self._cached(
            f"prev:{ticker}",
            lambda client: client.get_previous_close_agg(ticker),
            PREV_CLOSE_TTL,
        )

    async def get_news(self, ticker: str | None = None, limit: int = 10, order: str = "desc") -> list:
        ticker = ticker.upper().strip() if ticker else None
        return await self._cached(
            f"news:{ticker or '*'}:{limit}:{order}",
            # list_ticker_news paginates lazily; stop after ``limit`` articles
            lambda client: list(islice(client.list_ticker_news(ticker=ticker, limit=limit, order=order), limit)),
            NEWS_TTL,
        )

    async def get_market_status(self) -> Any:
        return await self._cached(
            "marketstatus:now",
            lambda client: client.get_market_status(),
            MARKET_STATUS_TTL,
        )

    async def get_aggregates(self, ticker: str, multiplier: int, timespan: str, from_: str, to: str) -> list:
        """OHLCV bars for charting. ``from_`` and ``to`` are YYYY-MM-DD dates."""
        ticker = ticker.upper().strip()
        return await self._cached(
            f"aggs:{ticker}:{multiplier}:{timespan}:{from_}:{to}",
            lambda client: client.get_aggs(ticker, multiplier, timespan, from_, to),
            AGGREGATES_TTL,
        )

    async def search_tickers(self, query: str, limit: int = 20) -> list:
        """Active tickers matching ``query``, for symbol search."""
        query = query.strip()
        if not query:
            return []
        return await self._cached(
            f"search:{query.lower()}:{limit}",
            lambda client: list(islice(client.list_tickers(search=query, active=True, limit=limit), limit)),
            SEARCH_TTL,
        )

    async def get_snapshots(self, tickers: list[str]) -> list:
        tickers = sorted({t.upper().strip() for t in tickers})
        if not tickers:
            return []

        def fetch(client: Any) -> list:
            from massive.rest.models import SnapshotMarketType

            return client.get_snapshot_all(market_type=SnapshotMarketType.STOCKS, tickers=tickers)

        return await self._cached(f"snapshot:{','.join(tickers)}", fetch, SNAPSHOT_TTL)

    # --- Internal ---

    async def _cached(self, key: str, call: Callable[[Any], Any], ttl_seconds: int) -> Any:
        async def fetcher() -> Any:
            client = self._rest()
            logger.debug("Massive REST fetch: %s", key)
            return await asyncio.to_thread(call, client)

        return await self._cache.resolve(key, fetcher, ttl_seconds)

    def _rest(self) -> Any:
        if self._client is None:
            # Lazy import: the simulator-only setup never touches the REST API
            from massive import RESTClient

            self._client = RESTClient(api_key=self._api_key)
        return self._client
