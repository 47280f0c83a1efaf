"""In-memory routing counters for the relay.

Exposed as JSON through the ``/metrics/summary`` health endpoint.
"""

import time
from dataclasses import asdict, dataclass, field


@dataclass
class RelayStats:
    """Monotonic counters for relay activity."""

    connections_opened: int = 0
    connections_closed: int = 0
    joins: int = 0
    leaves: int = 0
    routed: int = 0
    dropped_unparseable: int = 0
    dropped_unknown_type: int = 0
    dropped_invalid: int = 0
    dropped_no_target: int = 0
    dropped_queue_full: int = 0
    started_ts: float = field(default_factory=time.monotonic)

    @property
    def active_connections(self) -> int:
        return self.connections_opened - self.connections_closed

    @property
    def dropped_total(self) -> int:
        return (
            self.dropped_unparseable
            + self.dropped_unknown_type
            + self.dropped_invalid
            + self.dropped_no_target
            + self.dropped_queue_full
        )

    def summary(self) -> dict[str, float | int]:
        """Counters plus derived values, suitable for JSON encoding."""
        data: dict[str, float | int] = asdict(self)
        data.pop("started_ts")
        data["active_connections"] = self.active_connections
        data["dropped_total"] = self.dropped_total
        data["uptime_seconds"] = time.monotonic() - self.started_ts
        return data
