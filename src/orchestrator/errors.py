"""Exception hierarchy for the peer orchestrator."""


class MeshCallError(Exception):
    """Base exception for mesh call errors."""

    pass


class SignalingUnavailableError(MeshCallError, ConnectionError):
    """Raised when the relay connection cannot be opened or has dropped."""

    pass


class NegotiationError(MeshCallError):
    """Raised when a description or candidate cannot be generated or applied."""

    pass


class MediaAcquisitionError(MeshCallError):
    """Raised when a local capture source is unavailable."""

    pass


class TrackReplacementError(MeshCallError):
    """Raised when a transport cannot swap an outgoing track in place."""

    pass
