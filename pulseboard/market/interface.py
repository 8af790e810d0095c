"""Abstract interface for the upstream streaming transport."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable


class Transport(ABC):
    """One open, message-oriented duplex channel to the market data feed.

    The multiplexer owns exactly one Transport at a time and never shares it.
    Frames are JSON text in both directions.

    Lifecycle:
        transport = await connector(url)
        await transport.send('{"action":"auth","params":"..."}')
        async for frame in transport:
            ...  # iteration ends when the channel closes
        await transport.close()
    """

    @abstractmethod
    async def send(self, data: str) -> None:
        """Send one text frame. Raises if the channel is already closed."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once.

        Ends any pending iteration over inbound frames.
        """

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[str]:
        """Yield inbound text frames in arrival order until the channel closes.

        A clean close ends the iteration; an abnormal one raises.
        """


# An async callable that opens a Transport to the given URL
Connector = Callable[[str], Awaitable[Transport]]
