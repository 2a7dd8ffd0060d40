"""Domain events emitted after a unit of work commits."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any
from uuid import uuid4

from tourney.utils.json_utils import json_dumps


class DomainEventType(Enum):
    # Tournament lifecycle
    TOURNAMENT_STATUS_CHANGED = auto()
    TOURNAMENT_CANCELED = auto()
    TOURNAMENT_COMPLETED = auto()
    ROUND_ADVANCED = auto()

    # Registration
    PARTICIPANT_REGISTERED = auto()
    PARTICIPANT_WITHDRAWN = auto()

    # Matches and disputes
    MATCH_RESULT_SUBMITTED = auto()
    MATCH_COMPLETED = auto()
    DISPUTE_OPENED = auto()
    DISPUTE_RESOLVED = auto()

    # Money
    REFUND_ISSUED = auto()
    PRIZE_PAID = auto()


@dataclass
class DomainEvent:
    """Notification for external collaborators (email, websockets, audit)."""

    event_type: DomainEventType
    tournament_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    match_id: str | None = None
    user_id: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.name,
            "tournament_id": self.tournament_id,
            "match_id": self.match_id,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }

    def to_stream_fields(self) -> dict[str, str]:
        """Flat string mapping for a Redis stream entry."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.name,
            "tournament_id": self.tournament_id or "",
            "match_id": self.match_id or "",
            "user_id": self.user_id or "",
            "timestamp": self.timestamp.isoformat(),
            "data": json_dumps(self.data),
        }
