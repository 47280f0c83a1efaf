"""Room membership registry.

One registry per relay process. Every mutation, together with the
notifications it causes, runs under a single asyncio lock and never awaits
delivery, so a concurrent reader never observes a half-updated member set.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from relay.protocol import LeaveMessage, NewPeerMessage, PeersMessage

logger = logging.getLogger(__name__)


class MemberEndpoint(Protocol):
    """Relay-side handle to a participant connection.

    ``deliver`` must only enqueue; it is called while the registry lock is held.
    """

    connection_id: str

    def deliver(self, text: str) -> bool: ...


@dataclass
class Membership:
    """A peer id registered in a room, paired with its connection handle."""

    peer_id: str
    endpoint: MemberEndpoint


@dataclass
class Room:
    """Named scope in which participants discover each other."""

    room_id: str
    members: dict[str, Membership] = field(default_factory=dict)

    def peer_ids(self, exclude: str | None = None) -> list[str]:
        return [peer_id for peer_id in self.members if peer_id != exclude]


class RoomRegistry:
    """Process-wide table of rooms keyed by room id."""

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._lock = asyncio.Lock()

    async def join(self, room_id: str, peer_id: str, endpoint: MemberEndpoint) -> list[str]:
        """Register ``peer_id`` in ``room_id`` and announce it.

        Replies to the joining endpoint with the other members and broadcasts
        ``new-peer`` to them. The room is created on first reference. A
        colliding peer id is overwritten (last writer wins).

        Returns:
            Peer ids already in the room, excluding the caller
        """
        async with self._lock:
            room = self._get_or_create(room_id)
            existing = room.peer_ids(exclude=peer_id)

            replaced = room.members.get(peer_id)
            if replaced is not None and replaced.endpoint is not endpoint:
                logger.warning(
                    "Peer id collision, replacing previous connection",
                    extra={"room": room_id, "peer_id": peer_id},
                )

            room.members[peer_id] = Membership(peer_id=peer_id, endpoint=endpoint)

            endpoint.deliver(PeersMessage(peers=existing).to_wire())
            announcement = NewPeerMessage(id=peer_id).to_wire()
            for other_id in existing:
                room.members[other_id].endpoint.deliver(announcement)

        logger.info(
            "Peer joined room",
            extra={"room": room_id, "peer_id": peer_id, "members": len(existing) + 1},
        )
        return existing

    async def leave(self, room_id: str, peer_id: str, endpoint: MemberEndpoint) -> bool:
        """Remove a membership and broadcast ``leave`` to the remaining members.

        Only the endpoint currently registered under ``peer_id`` can remove it.
        Leaving twice, or leaving a room never joined, is a no-op.

        Returns:
            True if a membership was removed
        """
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return False

            membership = room.members.get(peer_id)
            if membership is None or membership.endpoint is not endpoint:
                return False

            del room.members[peer_id]
            if not room.members:
                del self._rooms[room_id]
            else:
                notice = LeaveMessage(id=peer_id).to_wire()
                for other in room.members.values():
                    other.endpoint.deliver(notice)

        logger.info("Peer left room", extra={"room": room_id, "peer_id": peer_id})
        return True

    async def route(self, room_id: str, to: str, text: str) -> bool:
        """Forward ``text`` to member ``to`` of ``room_id``.

        Returns:
            True if the target is a member and the text was enqueued
        """
        async with self._lock:
            room = self._rooms.get(room_id)
            membership = room.members.get(to) if room is not None else None
            if membership is None:
                return False
            return membership.endpoint.deliver(text)

    def members(self, room_id: str) -> list[str]:
        """Snapshot of member ids in a room (empty if the room does not exist)."""
        room = self._rooms.get(room_id)
        return room.peer_ids() if room is not None else []

    def snapshot(self) -> dict[str, list[str]]:
        """Snapshot of every room and its members."""
        return {room_id: room.peer_ids() for room_id, room in self._rooms.items()}

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def _get_or_create(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id)
            self._rooms[room_id] = room
            logger.debug("Room created", extra={"room": room_id})
        return room
