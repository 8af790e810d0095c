"""Data models for market data."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Union

# Aggregate event types on the stocks feed: per-second and per-minute bars
AGGREGATE_EVENTS = frozenset({"A", "AM"})


@dataclass(frozen=True, slots=True)
class Tick:
    """Canonical live aggregate for one ticker, as delivered to subscribers."""

    ticker: str
    price: float
    open: float | None = None
    high: float | None = None
    low: float | None = None
    volume: float | None = None
    vwap: float | None = None
    timestamp: int | None = None  # Unix milliseconds (bar end)
    accumulated_volume: float | None = None

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> Tick:
        """Reshape an upstream aggregate frame into a Tick."""
        return cls(
            ticker=message["sym"],
            price=message["c"],
            open=message.get("o"),
            high=message.get("h"),
            low=message.get("l"),
            volume=message.get("v"),
            vwap=message.get("vw"),
            timestamp=message.get("e"),
            accumulated_volume=message.get("av"),
        )

    @property
    def change(self) -> float:
        """Absolute move from the bar's open."""
        if self.open is None:
            return 0.0
        return round(self.price - self.open, 4)

    @property
    def change_percent(self) -> float:
        """Percentage move from the bar's open."""
        if not self.open:
            return 0.0
        return round((self.price - self.open) / self.open * 100, 4)

    def to_dict(self) -> dict:
        """Serialize for JSON / SSE transmission."""
        return {
            "ticker": self.ticker,
            "price": self.price,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "volume": self.volume,
            "vwap": self.vwap,
            "timestamp": self.timestamp,
            "accumulated_volume": self.accumulated_volume,
        }


@dataclass(eq=False)
class SubscriptionHandlers:
    """Callbacks for one logical subscription.

    Compared by identity: unsubscribing removes exactly the bundle that was
    registered, even if another bundle holds the same callables.
    """

    on_message: Callable[[Tick], None]
    on_error: Callable[[Exception], None] | None = None
    on_connect: Callable[[], None] | None = None
    on_disconnect: Callable[[], None] | None = None


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_AUTH = "awaiting_auth"
    AUTHENTICATED = "authenticated"
    RECONNECTING = "reconnecting"


# --- Upstream messages ---


@dataclass(frozen=True, slots=True)
class StatusMessage:
    status: str
    message: str = ""


@dataclass(frozen=True, slots=True)
class AggregateMessage:
    tick: Tick


@dataclass(frozen=True, slots=True)
class UnknownMessage:
    raw: Any


UpstreamMessage = Union[StatusMessage, AggregateMessage, UnknownMessage]


def parse_message(raw: Any) -> UpstreamMessage:
    """Classify one decoded upstream object by its ``ev`` discriminator."""
    if not isinstance(raw, dict):
        return UnknownMessage(raw)

    event = raw.get("ev")
    if event == "status":
        return StatusMessage(status=str(raw.get("status", "")), message=str(raw.get("message", "")))
    # An aggregate without a symbol or a close price has nothing to deliver
    if (
        event in AGGREGATE_EVENTS
        and isinstance(raw.get("sym"), str)
        and isinstance(raw.get("c"), (int, float))
    ):
        return AggregateMessage(Tick.from_message(raw))
    return UnknownMessage(raw)


@dataclass(slots=True)
class CacheEntry:
    """One cached value. Timestamps are Unix milliseconds."""

    key: str
    value: Any
    created_at: float
    expires_at: float

    def is_expired(self, now_ms: float) -> bool:
        return now_ms >= self.expires_at
