"""Market data subsystem for Pulseboard.

Public API:
    ConnectionMultiplexer - One upstream feed socket fanned out to subscribers
    SubscriptionHandlers  - Callback bundle for one subscription
    Tick                  - Immutable live aggregate record
    ConnectionState       - Multiplexer state machine states
    CoalescingCache       - TTL + LRU cache with in-flight request coalescing
    MassiveRestGateway    - Cache-backed Massive (Polygon.io) REST calls
    Transport             - Abstract duplex channel the multiplexer drives
    create_multiplexer / create_cache / create_rest_gateway - env factories
    create_stream_router  - FastAPI router factory for SSE endpoints
"""

from .cache import CoalescingCache
from .errors import (
    AuthenticationFailed,
    AuthenticationTimeout,
    ConnectionInProgress,
    FetchFailed,
    MarketDataError,
    TransportError,
)
from .factory import create_cache, create_multiplexer, create_rest_gateway
from .interface import Transport
from .massive_client import MassiveRestGateway
from .models import ConnectionState, SubscriptionHandlers, Tick
from .multiplexer import ConnectionMultiplexer
from .stream import create_stream_router

__all__ = [
    "AuthenticationFailed",
    "AuthenticationTimeout",
    "CoalescingCache",
    "ConnectionInProgress",
    "ConnectionMultiplexer",
    "ConnectionState",
    "FetchFailed",
    "MarketDataError",
    "MassiveRestGateway",
    "SubscriptionHandlers",
    "Tick",
    "Transport",
    "TransportError",
    "create_cache",
    "create_multiplexer",
    "create_rest_gateway",
    "create_stream_router",
]
