"""Signaling relay: room membership and envelope routing for mesh calls."""

from relay.config import RelayConfig
from relay.rooms import RoomRegistry
from relay.server import SignalingRelay

__all__ = ["RelayConfig", "RoomRegistry", "SignalingRelay"]
