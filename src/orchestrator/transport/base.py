"""Base peer transport abstraction.

Defines the interface the orchestrator drives for every remote peer. The
concrete transport performs the actual media delivery (aiortc in
production, in-memory fakes in tests); descriptions and candidates are
opaque JSON-compatible values that only the transport understands.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# Notifications a transport raises towards its negotiation session
TRANSPORT_EVENTS = ("local_candidate", "remote_track", "connection_state_change")

# Connection states after which the transport is unusable
TERMINAL_CONNECTION_STATES = frozenset({"disconnected", "failed", "closed"})


class PeerTransport(ABC):
    """Connection to one remote peer.

    Handlers registered with :meth:`on` are plain callables invoked
    synchronously from the transport's own context:

    - ``local_candidate(candidate)``: a local address candidate is ready
    - ``remote_track(track)``: the remote side started sending a track
    - ``connection_state_change(state)``: e.g. "connecting", "connected",
      "disconnected", "failed", "closed"
    """

    def __init__(self, remote_peer_id: str) -> None:
        self.remote_peer_id = remote_peer_id
        self._handlers: dict[str, list[Callable[..., None]]] = {name: [] for name in TRANSPORT_EVENTS}

    def on(self, event: str, handler: Callable[..., None]) -> None:
        """Register ``handler`` for a transport notification.

        Raises:
            ValueError: If ``event`` is not a known notification
        """
        if event not in self._handlers:
            raise ValueError(f"Unknown transport event: {event}")
        self._handlers[event].append(handler)

    def emit(self, event: str, *args: Any) -> None:
        """Invoke every handler registered for ``event``."""
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception:
                logger.exception(
                    "Transport event handler failed",
                    extra={"event": event, "remote_peer_id": self.remote_peer_id},
                )

    @abstractmethod
    async def add_track(self, track: Any) -> None:
        """Start sending ``track`` as a new outgoing media source."""
        pass

    async def replace_track(self, old_track: Any, new_track: Any) -> None:
        """Swap an outgoing track in place, without renegotiation.

        Transports that cannot do this keep the default.

        Raises:
            NotImplementedError: If in-place replacement is unsupported
            TrackReplacementError: If the swap was attempted and failed
        """
        raise NotImplementedError("In-place track replacement not supported")

    @abstractmethod
    async def remove_track(self, track: Any) -> None:
        """Stop sending ``track``."""
        pass

    @abstractmethod
    async def create_offer(self) -> Any:
        """Generate a local offer description."""
        pass

    @abstractmethod
    async def create_answer(self) -> Any:
        """Generate a local answer to the applied remote offer."""
        pass

    @abstractmethod
    async def set_local_description(self, description: Any) -> None:
        pass

    @abstractmethod
    async def set_remote_description(self, description: Any) -> None:
        """Apply a description received from the remote peer.

        Raises:
            NegotiationError: If the description is malformed or inapplicable
        """
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: Any) -> None:
        """Apply a candidate received from the remote peer.

        Raises:
            NegotiationError: If the candidate is malformed or inapplicable
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the connection and everything it holds."""
        pass

    @property
    @abstractmethod
    def connection_state(self) -> str:
        """Current connection state name."""
        pass

    @property
    @abstractmethod
    def local_description(self) -> Any:
        """Description to send to the remote peer, once one is applied."""
        pass


class PeerTransportFactory(ABC):
    """Creates one transport per remote peer."""

    @abstractmethod
    def create(self, remote_peer_id: str) -> PeerTransport:
        pass
