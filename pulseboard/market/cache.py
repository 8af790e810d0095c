"""TTL + LRU cache with in-flight request coalescing."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import FetchFailed
from .models import CacheEntry

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


class CoalescingCache:
    """In-memory cache sitting in front of slow, rate-limited fetches.

    - Entries expire ``ttl_seconds`` after they are written.
    - At ``max_size`` the least recently touched key is evicted.
    - ``resolve()`` collapses concurrent misses for one key into a single
      fetcher call; every caller gets the same value or the same error.

    All mutation happens on the event loop thread, so there is no locking.
    A shared store (e.g. Redis) could replace the dicts later without
    changing the public API.
    """

    def __init__(
        self,
        max_size: int = 500,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._access: dict[str, int] = {}
        self._access_counter: int = 0  # Strictly increasing; bumped on every touch
        self._inflight: dict[str, asyncio.Task] = {}
        self._task: asyncio.Task | None = None

    # --- Synchronous API ---

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None on a miss or an expired entry."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._now_ms()):
            self.delete(key)
            return None
        self._touch(key)
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int = 300) -> None:
        """Store a value, evicting the least recently touched key if full."""
        if key not in self._entries and len(self._entries) >= self._max_size:
            self._evict_lru()

        now = self._now_ms()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl_seconds * 1000,
        )
        self._touch(key)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        self._access.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self._access.clear()
        self._access_counter = 0

    def cleanup(self) -> int:
        """Drop every entry whose deadline has passed. Returns how many."""
        now = self._now_ms()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self.delete(key)
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def stats(self) -> dict[str, int]:
        return {
            "size": len(self._entries),
            "max_size": self._max_size,
            "in_flight": len(self._inflight),
        }

    # --- Coalescing ---

    async def resolve(self, key: str, fetcher: Fetcher, ttl_seconds: int = 300) -> Any:
        """Return the value for ``key``, fetching it at most once at a time.

        A valid cache hit never calls ``fetcher``. Concurrent misses share one
        in-flight fetch. Failures are not cached: every waiter receives the
        same FetchFailed, and the next call retries.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(key, fetcher, ttl_seconds))
            self._inflight[key] = task

        # Shield so one cancelled waiter does not cancel the shared fetch
        return await asyncio.shield(task)

    async def _fetch(self, key: str, fetcher: Fetcher, ttl_seconds: int) -> Any:
        try:
            value = await fetcher()
        except Exception as e:
            logger.warning("Fetch for cache key %s failed: %s", key, e)
            raise FetchFailed(key) from e
        else:
            self.set(key, value, ttl_seconds)
            return value
        finally:
            self._inflight.pop(key, None)

    # --- Background sweep ---

    async def start(self) -> None:
        """Start the periodic expiry sweep. No-op if already running."""
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._sweep_loop(), name="cache-sweeper")
        logger.info("Cache sweeper started: every %.0fs, max %d entries", self._sweep_interval, self._max_size)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Cache sweeper stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.cleanup()
            except Exception:
                logger.exception("Cache sweep failed")

    # --- Internals ---

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _touch(self, key: str) -> None:
        self._access_counter += 1
        self._access[key] = self._access_counter

    def _evict_lru(self) -> None:
        if not self._access:
            return
        lru_key = min(self._access, key=self._access.__getitem__)
        logger.debug("Cache full (%d), evicting %s", self._max_size, lru_key)
        self.delete(lru_key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._now_ms())
