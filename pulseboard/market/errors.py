"""Exceptions raised by the market data subsystem."""

from __future__ import annotations


class MarketDataError(Exception):
    """Base class for every error raised by pulseboard.market."""


class ConnectionInProgress(MarketDataError):
    """connect() was called while another attempt is still running.

    Non-fatal: the caller should wait for the existing attempt instead.
    """


class TransportError(MarketDataError):
    """The upstream socket failed, could not be opened, or closed early."""


class AuthenticationTimeout(TransportError):
    """The socket opened but no auth status arrived in time.

    Handled like any other transport failure, so reconnect logic applies.
    """


class AuthenticationFailed(MarketDataError):
    """The upstream feed rejected the credential. Never retried automatically."""


class FetchFailed(MarketDataError):
    """A cache fetcher raised. The original exception is chained as __cause__."""

    def __init__(self, key: str, message: str | None = None) -> None:
        self.key = key
        super().__init__(message or f"Fetch failed for cache key {key!r}")
