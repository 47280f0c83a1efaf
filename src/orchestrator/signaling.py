"""Client side of the signaling relay connection.

The orchestrator talks to the relay only through ``SignalingChannel``;
``WebSocketSignalingChannel`` is the production implementation.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from orchestrator.errors import SignalingUnavailableError
from relay.protocol import Envelope, parse_envelope

logger = logging.getLogger(__name__)


class SignalingChannel(ABC):
    """Bidirectional envelope channel to the relay."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel.

        Raises:
            SignalingUnavailableError: If the relay cannot be reached
        """
        pass

    @abstractmethod
    async def send(self, envelope: Envelope) -> None:
        """Send one envelope.

        Raises:
            SignalingUnavailableError: If the channel is closed or broken
        """
        pass

    @abstractmethod
    def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Iterate decoded inbound envelopes until the channel closes."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass


class WebSocketSignalingChannel(SignalingChannel):
    """Signaling over one websocket connection to the relay."""

    def __init__(self, url: str, max_size: int = 2**20) -> None:
        """Initialize the channel.

        Args:
            url: Relay URL (ws:// or wss://)
            max_size: Largest accepted inbound frame in bytes
        """
        self.url = url
        self._max_size = max_size
        self._websocket: ClientConnection | None = None

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None

    async def connect(self) -> None:
        if self._websocket is not None:
            return

        try:
            self._websocket = await websockets.connect(self.url, max_size=self._max_size)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error("Failed to connect to relay", extra={"url": self.url, "error": str(e)})
            raise SignalingUnavailableError(f"Cannot connect to relay at {self.url}: {e}") from e

        logger.info("Connected to relay", extra={"url": self.url})

    async def send(self, envelope: Envelope) -> None:
        if self._websocket is None:
            raise SignalingUnavailableError("Signaling channel is not connected")

        try:
            await self._websocket.send(envelope.to_wire())
        except websockets.exceptions.ConnectionClosed as e:
            self._websocket = None
            raise SignalingUnavailableError(f"Relay connection closed: {e}") from e

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        if self._websocket is None:
            raise SignalingUnavailableError("Signaling channel is not connected")

        websocket = self._websocket
        try:
            async for raw_message in websocket:
                data = parse_envelope(raw_message)
                if data is None:
                    logger.debug("Dropping unparseable envelope from relay")
                    continue
                yield data
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning("Relay connection lost", extra={"url": self.url, "error": str(e)})
        else:
            logger.warning("Relay closed the connection", extra={"url": self.url})

        if self._websocket is websocket:
            self._websocket = None

    async def close(self) -> None:
        if self._websocket is None:
            return

        websocket, self._websocket = self._websocket, None
        await websocket.close()
        logger.info("Relay connection closed", extra={"url": self.url})
