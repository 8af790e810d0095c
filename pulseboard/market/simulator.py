"""Offline stand-in for the stocks feed, driven by a GBM price model."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator

import numpy as np

from .interface import Transport
from .seed_prices import DEFAULT_PARAMS, DEFAULT_PRICE_RANGE, SEED_PRICES, TICKER_PARAMS

logger = logging.getLogger(__name__)

SIMULATOR_URL = "simulator://stocks"


class AggregateSimulator:
    """Geometric Brownian Motion rolled up into per-interval OHLCV bars.

    Each bar is built from ``substeps`` GBM moves:

        S(t+dt) = S(t) * exp((mu - sigma^2/2) * dt + sigma * sqrt(dt) * Z)

    with dt expressed as a fraction of a trading year, so per-bar moves stay
    in the sub-cent to cent range. Volume per bar is Poisson distributed
    around the ticker's average rate.
    """

    TRADING_SECONDS_PER_YEAR = 252 * 6.5 * 3600  # 5,896,800

    def __init__(
        self,
        interval: float = 1.0,
        substeps: int = 10,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._interval = interval
        self._substeps = substeps
        self._rng = rng or np.random.default_rng()
        self._tickers: list[str] = []
        self._prices: dict[str, float] = {}
        self._params: dict[str, dict[str, float]] = {}
        self._accumulated: dict[str, int] = {}

    @property
    def tickers(self) -> list[str]:
        return list(self._tickers)

    def add_ticker(self, ticker: str) -> None:
        if ticker in self._prices:
            return
        self._tickers.append(ticker)
        low, high = DEFAULT_PRICE_RANGE
        self._prices[ticker] = SEED_PRICES.get(ticker, float(self._rng.uniform(low, high)))
        self._params[ticker] = TICKER_PARAMS.get(ticker, dict(DEFAULT_PARAMS))
        self._accumulated[ticker] = 0

    def remove_ticker(self, ticker: str) -> None:
        if ticker not in self._prices:
            return
        self._tickers.remove(ticker)
        del self._prices[ticker]
        del self._params[ticker]
        del self._accumulated[ticker]

    def get_price(self, ticker: str) -> float | None:
        return self._prices.get(ticker)

    def step(self, end_ms: int) -> list[dict]:
        """Advance every ticker by one bar ending at ``end_ms``.

        Returns one ``"A"`` aggregate frame per ticker in the wire format.
        """
        n = len(self._tickers)
        if n == 0:
            return []

        sigma = np.array([self._params[t]["sigma"] for t in self._tickers])
        mu = np.array([self._params[t]["mu"] for t in self._tickers])
        rate = np.array([self._params[t]["volume"] for t in self._tickers])
        start = np.array([self._prices[t] for t in self._tickers])

        dt = self._interval / self._substeps / self.TRADING_SECONDS_PER_YEAR
        z = self._rng.standard_normal((n, self._substeps))
        log_returns = ((mu - 0.5 * sigma**2) * dt)[:, None] + (sigma * np.sqrt(dt))[:, None] * z
        paths = start[:, None] * np.exp(np.cumsum(log_returns, axis=1))
        volumes = self._rng.poisson(rate * self._interval)

        start_ms = end_ms - int(self._interval * 1000)
        frames: list[dict] = []
        for i, ticker in enumerate(self._tickers):
            path = paths[i]
            open_price = float(start[i])
            close = float(path[-1])
            volume = int(volumes[i])
            self._prices[ticker] = close
            self._accumulated[ticker] += volume
            frames.append(
                {
                    "ev": "A",
                    "sym": ticker,
                    "o": round(open_price, 2),
                    "c": round(close, 2),
                    "h": round(max(open_price, float(path.max())), 2),
                    "l": round(min(open_price, float(path.min())), 2),
                    "v": volume,
                    "vw": round(float(path.mean()), 4),
                    "av": self._accumulated[ticker],
                    "s": start_ms,
                    "e": end_ms,
                }
            )
        return frames


class SimulatorTransport(Transport):
    """In-process Transport that speaks the stocks feed protocol.

    Accepts any credential, honours subscribe/unsubscribe directives for its
    channel and pushes one batched frame of aggregates per ``interval``.
    Used when no API key is configured.
    """

    def __init__(
        self,
        simulator: AggregateSimulator | None = None,
        interval: float = 1.0,
        channel: str = "A",
    ) -> None:
        self._sim = simulator or AggregateSimulator(interval=interval)
        self._interval = interval
        self._channel = channel
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._task: asyncio.Task | None = None
        self._status("connected", "Connected Successfully")

    @classmethod
    async def open(cls, url: str) -> SimulatorTransport:
        """Connector: the URL is ignored."""
        logger.info("Simulated feed opened: %s", url)
        return cls()

    @property
    def simulator(self) -> AggregateSimulator:
        return self._sim

    async def send(self, data: str) -> None:
        if self._closed:
            raise ConnectionError("Simulated feed is closed")

        message = json.loads(data)
        action = message.get("action")
        if action == "auth":
            self._status("auth_success", "authenticated")
            if self._task is None:
                self._task = asyncio.create_task(self._run_loop(), name="simulator-feed")
        elif action in ("subscribe", "unsubscribe"):
            for param in str(message.get("params", "")).split(","):
                prefix, _, symbol = param.strip().partition(".")
                if prefix != self._channel or not symbol:
                    continue
                if action == "subscribe":
                    self._sim.add_ticker(symbol)
                    self._status("success", f"subscribed to: {param}")
                else:
                    self._sim.remove_ticker(symbol)
                    self._status("success", f"unsubscribed to: {param}")
        else:
            logger.debug("Simulated feed ignoring action %r", action)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._inbox.put_nowait(None)
        logger.info("Simulated feed closed")

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            frame = await self._inbox.get()
            if frame is None:
                return
            yield frame

    def _status(self, status: str, message: str) -> None:
        self._inbox.put_nowait(json.dumps([{"ev": "status", "status": status, "message": message}]))

    async def _run_loop(self) -> None:
        """Emit one batch of bars per interval until closed."""
        while True:
            await asyncio.sleep(self._interval)
            try:
                frames = self._sim.step(int(time.time() * 1000))
                if frames:
                    self._inbox.put_nowait(json.dumps(frames))
            except Exception:
                logger.exception("Simulator step failed")
