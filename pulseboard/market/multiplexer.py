"""One upstream streaming connection shared by every in-process subscriber."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import Callable

from .errors import (
    AuthenticationFailed,
    AuthenticationTimeout,
    ConnectionInProgress,
    MarketDataError,
    TransportError,
)
from .interface import Connector, Transport
from .models import (
    AggregateMessage,
    ConnectionState,
    StatusMessage,
    SubscriptionHandlers,
    Tick,
    parse_message,
)
from .websocket_transport import DELAYED_URL, WebSocketTransport

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState], None]


def compute_backoff(base_delay: float, attempt: int) -> float:
    """Delay in seconds before reconnect ``attempt`` (1-based)."""
    return base_delay * (2 ** (attempt - 1))


def _normalize(symbol: str) -> str:
    return symbol.strip().upper()


class ConnectionMultiplexer:
    """Fans one authenticated market data socket out to many subscribers.

    Subscriptions are keyed by symbol. The upstream subscribe directive is sent
    when the first handler for a symbol arrives and the unsubscribe directive
    when the last one leaves. Directives issued before authentication are
    queued and flushed in order as soon as the feed accepts the credential.

    Unexpected closes are retried with exponential backoff up to
    ``max_reconnect_attempts``; an explicit ``disconnect()`` or a rejected
    credential is never retried.

    Construct one per process at startup and ``await disconnect()`` at
    shutdown. ``subscribe()`` must be called from the running event loop.
    """

    def __init__(
        self,
        api_key: str,
        url: str = DELAYED_URL,
        *,
        channel: str = "A",
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        auth_timeout: float = 10.0,
        connector: Connector | None = None,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._channel = channel
        self._max_attempts = max_reconnect_attempts
        self._base_delay = reconnect_delay
        self._auth_timeout = auth_timeout
        self._connector: Connector = connector or WebSocketTransport.open

        self._state = ConnectionState.DISCONNECTED
        self._transport: Transport | None = None
        self._subscriptions: dict[str, list[SubscriptionHandlers]] = {}
        self._pending: deque[dict] = deque()  # Directives waiting for auth, FIFO
        self._outbox: asyncio.Queue | None = None
        self._reconnect_attempts = 0
        self._retry_on_close = True
        self._auth_waiter: asyncio.Future | None = None
        self._listeners: list[StateListener] = []

        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None

    # --- Public API ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def symbols(self) -> list[str]:
        """Symbols with at least one live subscription, in first-subscribed order."""
        return list(self._subscriptions)

    def is_connected(self) -> bool:
        return self._transport is not None and self._state is ConnectionState.AUTHENTICATED

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener(state)`` on every state transition. Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def connect(self) -> None:
        """Open the socket and wait until the feed confirms authentication.

        Returns immediately when already authenticated. Raises
        ConnectionInProgress if another attempt is running, AuthenticationFailed
        if the credential is rejected, AuthenticationTimeout if no status
        arrives in time, and TransportError if the socket cannot be opened or
        closes first.
        """
        if self._state is ConnectionState.AUTHENTICATED:
            return
        if self._state in (ConnectionState.CONNECTING, ConnectionState.AWAITING_AUTH):
            raise ConnectionInProgress("Connection already in progress")

        self._cancel_reconnect()
        self._reconnect_attempts = 0
        await self._open_session()

    def subscribe(self, symbol: str, handlers: SubscriptionHandlers) -> Callable[[], None]:
        """Register ``handlers`` for ``symbol``. Returns a zero-argument unsubscriber.

        Never raises because of network state: when not authenticated the
        upstream directive is queued, and a connection attempt is started if
        none is under way.
        """
        symbol = _normalize(symbol)
        existing = self._subscriptions.get(symbol)

        if existing is None:
            self._subscriptions[symbol] = [handlers]
            logger.info("Subscribing to %s", symbol)
            directive = self._directive("subscribe", symbol)
            if self._state is ConnectionState.AUTHENTICATED:
                self._send(directive)
            else:
                self._pending.append(directive)
        else:
            existing.append(handlers)
            logger.debug("Added handler for %s (%d total)", symbol, len(existing))

        if self._state is ConnectionState.DISCONNECTED and (
            self._connect_task is None or self._connect_task.done()
        ):
            self._connect_task = asyncio.create_task(
                self._connect_in_background(), name="multiplexer-connect"
            )

        return lambda: self.unsubscribe(symbol, handlers)

    def unsubscribe(self, symbol: str, handlers: SubscriptionHandlers) -> None:
        """Remove exactly this handler bundle. No-op if it is not registered."""
        symbol = _normalize(symbol)
        existing = self._subscriptions.get(symbol)
        if not existing:
            return

        for index, registered in enumerate(existing):
            if registered is handlers:
                del existing[index]
                break
        else:
            return

        if existing:
            return

        del self._subscriptions[symbol]
        logger.info("Unsubscribing from %s", symbol)
        if self._state is ConnectionState.AUTHENTICATED:
            self._send(self._directive("unsubscribe", symbol))
        else:
            params = f"{self._channel}.{symbol}"
            self._pending = deque(d for d in self._pending if d["params"] != params)

    async def disconnect(self) -> None:
        """Close the socket and forget every subscription. Nothing is retried."""
        logger.info("Disconnecting...")
        self._cancel_reconnect()
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None

        self._subscriptions.clear()
        self._pending.clear()
        self._reconnect_attempts = 0
        self._retry_on_close = False

        transport = self._transport
        if transport is not None or self._state is not ConnectionState.DISCONNECTED:
            self._handle_close()
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning("Error closing upstream connection: %s", e)

    # --- Session lifecycle ---

    async def _open_session(self) -> None:
        self._retry_on_close = True
        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to %s", self._url)

        try:
            transport = await self._connector(self._url)
        except asyncio.CancelledError:
            # The caller gave up while the socket was opening
            if self._state is ConnectionState.CONNECTING:
                self._handle_close()
            raise
        except Exception as e:
            error = TransportError(f"Could not connect to {self._url}: {e}")
            logger.warning("%s", error)
            self._notify_error(error)
            self._handle_close()
            raise error from e

        if self._state is not ConnectionState.CONNECTING:
            # disconnect() ran while the socket was opening
            await transport.close()
            raise TransportError("Disconnected while connecting")

        waiter = asyncio.get_running_loop().create_future()
        self._transport = transport
        self._auth_waiter = waiter
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.create_task(
            self._write_loop(transport, self._outbox), name="multiplexer-writer"
        )
        self._reader_task = asyncio.create_task(self._read_loop(transport), name="multiplexer-reader")
        self._set_state(ConnectionState.AWAITING_AUTH)

        logger.info("Connected, authenticating...")
        self._send({"action": "auth", "params": self._api_key})

        try:
            await asyncio.wait_for(waiter, timeout=self._auth_timeout)
        except asyncio.TimeoutError:
            error = AuthenticationTimeout(f"No authentication status within {self._auth_timeout:g}s")
            if self._transport is transport:
                logger.warning("%s", error)
                self._notify_error(error)
                self._handle_close()
                await transport.close()
            raise error from None
        except asyncio.CancelledError:
            # A cancelled caller takes the half-open handshake down with it
            if self._transport is transport and self._state is ConnectionState.AWAITING_AUTH:
                logger.warning("Connect cancelled during authentication, closing %s", self._url)
                self._handle_close()
                await transport.close()
            raise

    async def _connect_in_background(self) -> None:
        try:
            await self.connect()
        except MarketDataError as e:
            logger.warning("Background connect failed: %s", e)

    def _handle_close(self) -> None:
        """Tear down the current session, notify subscribers, maybe reconnect."""
        self._transport = None
        current = asyncio.current_task()
        for task in (self._reader_task, self._writer_task):
            if task is not None and task is not current:
                task.cancel()
        self._reader_task = None
        self._writer_task = None
        self._outbox = None

        if self._auth_waiter is not None and not self._auth_waiter.done():
            self._auth_waiter.set_exception(TransportError("Connection closed before authentication"))
        self._auth_waiter = None

        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from %s", self._url)

        # The next session has to re-establish every live upstream subscription
        self._pending = deque(self._directive("subscribe", symbol) for symbol in self._subscriptions)

        for handlers in self._all_handlers():
            self._invoke(handlers.on_disconnect)

        if self._retry_on_close:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if not self._subscriptions:
            return
        if self._reconnect_attempts >= self._max_attempts:
            logger.error("Max reconnection attempts reached (%d); staying disconnected", self._max_attempts)
            return

        self._reconnect_attempts += 1
        delay = compute_backoff(self._base_delay, self._reconnect_attempts)
        logger.info(
            "Reconnecting in %.2fs (attempt %d/%d)",
            delay,
            self._reconnect_attempts,
            self._max_attempts,
        )
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="multiplexer-reconnect"
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if not self._subscriptions:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        try:
            await self._open_session()
        except MarketDataError as e:
            logger.warning("Reconnect attempt %d failed: %s", self._reconnect_attempts, e)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

    # --- I/O loops ---

    async def _read_loop(self, transport: Transport) -> None:
        try:
            async for frame in transport:
                self._handle_frame(frame)
                if self._transport is not transport:
                    break
        except Exception as e:
            if self._transport is transport:
                logger.warning("Upstream connection error: %s", e)
                self._notify_error(TransportError(f"WebSocket error: {e}"))

        if self._transport is transport:
            self._handle_close()
        else:
            await transport.close()

    async def _write_loop(self, transport: Transport, outbox: asyncio.Queue) -> None:
        while True:
            message = await outbox.get()
            try:
                await transport.send(json.dumps(message))
            except Exception as e:
                # The reader notices the dead socket and handles the close
                logger.warning("Failed to send %s: %s", message.get("action"), e)

    def _send(self, message: dict) -> None:
        if self._outbox is None:
            logger.warning("Cannot send %s, not connected", message.get("action"))
            return
        self._outbox.put_nowait(message)

    def _directive(self, action: str, symbol: str) -> dict:
        return {"action": action, "params": f"{self._channel}.{symbol}"}

    # --- Inbound messages ---

    def _handle_frame(self, frame: str) -> None:
        try:
            payload = json.loads(frame)
        except (TypeError, ValueError) as e:
            logger.error("Error parsing upstream frame: %s", e)
            return

        messages = payload if isinstance(payload, list) else [payload]
        for raw in messages:
            message = parse_message(raw)
            if isinstance(message, StatusMessage):
                self._handle_status(message)
                if self._transport is None:
                    return
            elif isinstance(message, AggregateMessage):
                self._dispatch(message.tick)
            else:
                logger.debug("Ignoring upstream message: %s", message.raw)

    def _handle_status(self, message: StatusMessage) -> None:
        if message.status == "auth_success":
            if self._state is ConnectionState.AUTHENTICATED:
                return
            logger.info("Authenticated with %s", self._url)
            self._reconnect_attempts = 0
            # Flush before the state flips so no new directive can jump the queue
            while self._pending:
                self._send(self._pending.popleft())
            self._set_state(ConnectionState.AUTHENTICATED)
            if self._auth_waiter is not None and not self._auth_waiter.done():
                self._auth_waiter.set_result(None)
            for handlers in self._all_handlers():
                self._invoke(handlers.on_connect)

        elif message.status == "auth_failed":
            # Terminal even after an earlier successful session: a revoked key
            # will not start working again by retrying
            error = AuthenticationFailed(message.message or "Authentication failed")
            logger.error("Authentication failed: %s", message.message or "no reason given")
            if self._auth_waiter is not None and not self._auth_waiter.done():
                self._auth_waiter.set_exception(error)
            self._notify_error(error)
            self._retry_on_close = False
            self._handle_close()

        else:
            logger.debug("Upstream status %s: %s", message.status, message.message)

    def _dispatch(self, tick: Tick) -> None:
        handlers = self._subscriptions.get(tick.ticker)
        if not handlers:
            return
        # Snapshot: a handler may unsubscribe itself
        for registered in list(handlers):
            self._invoke(registered.on_message, tick)

    # --- Notifications ---

    def _all_handlers(self) -> list[SubscriptionHandlers]:
        return [h for handlers in list(self._subscriptions.values()) for h in list(handlers)]

    def _notify_error(self, error: Exception) -> None:
        for handlers in self._all_handlers():
            self._invoke(handlers.on_error, error)

    def _invoke(self, callback: Callable | None, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Subscriber callback failed")

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Connection state: %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")
