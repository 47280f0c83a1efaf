"""Peer orchestrator for mesh video calls.

This module drives one negotiation session per remote peer in a room,
exchanging descriptions and candidates through the signaling relay and
swapping the outgoing video source (camera or screen) across all sessions.
"""

__version__ = "0.1.0"
