"""Factories that build the market data components from environment variables."""

from __future__ import annotations

import logging
import os

from .cache import CoalescingCache
from .massive_client import MassiveRestGateway
from .multiplexer import ConnectionMultiplexer
from .simulator import SIMULATOR_URL, SimulatorTransport
from .websocket_transport import DELAYED_URL, REALTIME_URL

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _api_key() -> str:
    return os.environ.get("MASSIVE_API_KEY", "").strip()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


def create_multiplexer() -> ConnectionMultiplexer:
    """Create the process-wide streaming multiplexer.

    - MASSIVE_API_KEY set and non-empty → Massive WebSocket feed
      (MASSIVE_REALTIME=1 selects the realtime endpoint, otherwise delayed)
    - Otherwise → in-process simulated feed

    Returns a disconnected multiplexer. It connects on the first subscribe()
    or an explicit ``await connect()``; call ``await disconnect()`` at shutdown.
    """
    options = {
        "max_reconnect_attempts": _env_int("MARKET_MAX_RECONNECT_ATTEMPTS", 5),
        "reconnect_delay": _env_float("MARKET_RECONNECT_DELAY", 1.0),
        "auth_timeout": _env_float("MARKET_AUTH_TIMEOUT", 10.0),
    }
    api_key = _api_key()

    if api_key:
        realtime = os.environ.get("MASSIVE_REALTIME", "").strip().lower() in _TRUTHY
        url = REALTIME_URL if realtime else DELAYED_URL
        logger.info("Streaming source: Massive WebSocket (%s)", "realtime" if realtime else "delayed")
        return ConnectionMultiplexer(api_key, url, **options)

    logger.info("Streaming source: simulated feed")
    return ConnectionMultiplexer(
        "simulator",
        SIMULATOR_URL,
        connector=SimulatorTransport.open,
        **options,
    )


def create_cache() -> CoalescingCache:
    """Create the shared REST response cache. Caller must ``await cache.start()``."""
    return CoalescingCache(
        max_size=_env_int("CACHE_MAX_SIZE", 500),
        sweep_interval=_env_float("CACHE_SWEEP_INTERVAL", 300.0),
    )


def create_rest_gateway(cache: CoalescingCache) -> MassiveRestGateway | None:
    """Cache-backed REST gateway, or None when no MASSIVE_API_KEY is configured."""
    api_key = _api_key()
    if not api_key:
        logger.info("REST gateway disabled: MASSIVE_API_KEY not set")
        return None
    return MassiveRestGateway(api_key=api_key, cache=cache)
