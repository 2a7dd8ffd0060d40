"""Dispute tickets raised against match results."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SQLEnum, ForeignKey, Index, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from tourney.errors import AlreadyResolvedError, InvalidDisputeStatusError, ValidationError
from tourney.models.base import Base, TimestampMixin, UUIDMixin, utcnow
from tourney.tournament.state_machine import StateMachine, Transition


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_PARTICIPANT1_WIN = "RESOLVED_PARTICIPANT1_WIN"
    RESOLVED_PARTICIPANT2_WIN = "RESOLVED_PARTICIPANT2_WIN"
    RESOLVED_REPLAY_MATCH = "RESOLVED_REPLAY_MATCH"
    RESOLVED_NO_ACTION = "RESOLVED_NO_ACTION"
    CLOSED_INVALID = "CLOSED_INVALID"


_D = DisputeStatus

OPEN_STATUSES = (_D.OPEN, _D.UNDER_REVIEW)
RESOLUTION_STATUSES = (
    _D.RESOLVED_PARTICIPANT1_WIN,
    _D.RESOLVED_PARTICIPANT2_WIN,
    _D.RESOLVED_REPLAY_MATCH,
    _D.RESOLVED_NO_ACTION,
    _D.CLOSED_INVALID,
)


DISPUTE_FSM: StateMachine[DisputeStatus] = StateMachine(
    "DisputeTicket",
    [
        Transition.of(_D.OPEN, "start_review", _D.UNDER_REVIEW),
        Transition.of(_D.OPEN, "resolve", *RESOLUTION_STATUSES),
        Transition.of(_D.UNDER_REVIEW, "resolve", *RESOLUTION_STATUSES),
    ],
    terminal=RESOLUTION_STATUSES,
    error=InvalidDisputeStatusError,
    terminal_error=AlreadyResolvedError,
)


class DisputeTicket(Base, UUIDMixin, TimestampMixin):
    """A contested match result awaiting moderator review."""

    __tablename__ = "dispute_tickets"
    __table_args__ = (
        # At most one open ticket per match
        Index(
            "uq_dispute_tickets_open_match",
            "match_id",
            unique=True,
            postgresql_where=text("status IN ('OPEN', 'UNDER_REVIEW')"),
            sqlite_where=text("status IN ('OPEN', 'UNDER_REVIEW')"),
        ),
    )

    match_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("matches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reporter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(
        SQLEnum(DisputeStatus, name="dispute_status"),
        default=DisputeStatus.OPEN,
        nullable=False,
        index=True,
    )
    resolution_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    moderator_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @classmethod
    def open(cls, match_id: str, reporter_id: str, reason: str) -> "DisputeTicket":
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")
        return cls(
            match_id=match_id,
            reporter_id=reporter_id,
            reason=reason.strip(),
            status=DisputeStatus.OPEN,
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def start_review(self, moderator_id: str) -> None:
        self.status = DISPUTE_FSM.next_state(self.status, "start_review")
        self.moderator_id = moderator_id

    def resolve(
        self,
        resolution_status: DisputeStatus,
        resolution_details: str | None,
        moderator_id: str,
    ) -> None:
        self.status = DISPUTE_FSM.next_state(self.status, "resolve", resolution_status)
        self.resolution_details = resolution_details
        self.moderator_id = moderator_id
        self.resolved_at = utcnow()

    def __repr__(self) -> str:
        return f"<DisputeTicket {self.id} match={self.match_id} {self.status.value}>"
