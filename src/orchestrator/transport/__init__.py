"""Peer transport layer.

Provides the abstraction the orchestrator drives for each remote peer. The
aiortc-backed implementation lives in ``orchestrator.transport.aiortc_transport``
and is only imported when the ``media`` extra is installed.
"""

from orchestrator.transport.base import (
    TERMINAL_CONNECTION_STATES,
    TRANSPORT_EVENTS,
    PeerTransport,
    PeerTransportFactory,
)

__all__ = [
    "TERMINAL_CONNECTION_STATES",
    "TRANSPORT_EVENTS",
    "PeerTransport",
    "PeerTransportFactory",
]
