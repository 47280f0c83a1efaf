"""Signaling wire protocol definitions.

Defines Pydantic models for the JSON envelopes exchanged between peers and
the signaling relay. Every envelope carries a ``type`` discriminator; the
relay only ever inspects ``type``, ``room``, ``from``, ``to`` and ``id``.
Session descriptions (``sdp``) and candidates (``candidate``) are opaque
JSON values owned by the peer transport.
"""

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# Envelope types the relay forwards verbatim to a single addressed member
RELAYED_TYPES: frozenset[str] = frozenset({"offer", "answer", "ice"})


class Envelope(BaseModel):
    """Base envelope.

    Unknown fields are kept so that a relayed envelope can be re-serialized
    without losing anything the sender attached.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str

    def to_wire(self) -> str:
        """Serialize to the JSON text frame sent over the websocket."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class JoinMessage(Envelope):
    """Client → Relay: register under ``room`` as ``id``."""

    type: Literal["join"] = "join"
    room: str = Field(..., min_length=1, description="Room identifier")
    id: str = Field(..., min_length=1, description="Peer id chosen by the client")


class PeersMessage(Envelope):
    """Relay → Client: current members of the joined room, excluding the caller."""

    type: Literal["peers"] = "peers"
    peers: list[str] = Field(default_factory=list)


class NewPeerMessage(Envelope):
    """Relay → Client: a new member joined the room."""

    type: Literal["new-peer"] = "new-peer"
    id: str = Field(..., min_length=1)


class OfferMessage(Envelope):
    """Peer → Peer (relayed): session description offer."""

    type: Literal["offer"] = "offer"
    from_: str = Field(..., alias="from", min_length=1)
    to: str = Field(..., min_length=1)
    sdp: Any


class AnswerMessage(Envelope):
    """Peer → Peer (relayed): session description answer."""

    type: Literal["answer"] = "answer"
    from_: str = Field(..., alias="from", min_length=1)
    to: str = Field(..., min_length=1)
    sdp: Any


class IceMessage(Envelope):
    """Peer → Peer (relayed): transport address candidate."""

    type: Literal["ice"] = "ice"
    from_: str = Field(..., alias="from", min_length=1)
    to: str = Field(..., min_length=1)
    candidate: Any


class LeaveMessage(Envelope):
    """Both directions: a member left the room.

    Clients may attach ``room``; the relay only trusts the identity the
    connection registered with.
    """

    type: Literal["leave"] = "leave"
    id: str = Field(..., min_length=1)
    room: str | None = None


MESSAGE_MODELS: dict[str, type[Envelope]] = {
    "join": JoinMessage,
    "peers": PeersMessage,
    "new-peer": NewPeerMessage,
    "offer": OfferMessage,
    "answer": AnswerMessage,
    "ice": IceMessage,
    "leave": LeaveMessage,
}


def parse_envelope(raw: str | bytes) -> dict[str, Any] | None:
    """Decode a websocket frame into an envelope dict.

    Args:
        raw: Text (or UTF-8 bytes) frame

    Returns:
        The decoded JSON object, or None if the frame is not a JSON object
        with a string ``type`` field
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        return None
    return data


def validate_envelope(data: dict[str, Any]) -> Envelope:
    """Validate a decoded envelope against its typed model.

    Raises:
        ValueError: If the type is unknown
        pydantic.ValidationError: If required fields are missing
    """
    model = MESSAGE_MODELS.get(data.get("type", ""))
    if model is None:
        raise ValueError(f"Unknown envelope type: {data.get('type')!r}")
    return model.model_validate(data)
