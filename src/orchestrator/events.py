"""Typed session events and the in-process event bus.

Negotiation sessions publish their transitions here instead of calling
renderers or the signaling sender directly. Each subscriber gets its own
FIFO queue, so a slow consumer only delays itself.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeshEvent:
    """Base class for everything published on the bus."""


@dataclass(frozen=True)
class SessionEvent(MeshEvent):
    """Event emitted by one negotiation session."""

    peer_id: str
    session_id: str


@dataclass(frozen=True)
class SessionStateChanged(SessionEvent):
    old_state: str
    new_state: str


@dataclass(frozen=True)
class LocalDescriptionReady(SessionEvent):
    """A local offer or answer is ready to be sent to the remote peer."""

    description_type: str  # "offer" | "answer"
    description: Any


@dataclass(frozen=True)
class CandidatesPending(SessionEvent):
    """The session holds local candidates waiting for delivery."""


@dataclass(frozen=True)
class RemoteTrackReceived(SessionEvent):
    track: Any


@dataclass(frozen=True)
class OutgoingTrackReplaced(SessionEvent):
    track: Any
    seamless: bool  # False when the detach/attach fallback was used


@dataclass(frozen=True)
class TrackReplacementAbandoned(SessionEvent):
    error: str


@dataclass(frozen=True)
class SessionClosed(SessionEvent):
    reason: str


@dataclass(frozen=True)
class SignalingStateChanged(MeshEvent):
    available: bool
    detail: str = ""


class Subscription:
    """Queue-backed event stream for one subscriber."""

    _CLOSED = object()

    def __init__(self, bus: "EventBus") -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    def push(self, event: MeshEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def get(self) -> MeshEvent:
        """Wait for the next event.

        Raises:
            StopAsyncIteration: If the subscription was closed
        """
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        event: MeshEvent = item
        return event

    def get_nowait(self) -> MeshEvent | None:
        """Next queued event, or None if nothing is pending."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is self._CLOSED:
            return None
        event: MeshEvent = item
        return event

    def drain(self) -> list[MeshEvent]:
        """Pop every event queued so far."""
        events = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def close(self) -> None:
        """Detach from the bus and end iteration."""
        if self._closed:
            return
        self._closed = True
        self._bus.unsubscribe(self)
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[MeshEvent]:
        return self

    async def __anext__(self) -> MeshEvent:
        return await self.get()


class EventBus:
    """Fan-out of published events to every live subscription."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: MeshEvent) -> None:
        """Queue ``event`` for every subscriber. Never blocks."""
        logger.debug("Event published", extra={"event": type(event).__name__})
        for subscription in list(self._subscriptions):
            subscription.push(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
