"""Tournament aggregate and participant rows.

Tournament status only changes through the transition methods below, each
validated by TOURNAMENT_FSM. ``current_participants`` is not touched here;
TournamentService owns the counter so the guarded UPDATE runs in the same
transaction as the participant insert/delete.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from tourney.errors import InvalidTransitionError, ValidationError
from tourney.models.base import Base, TimestampMixin, UUIDMixin, as_utc, utcnow
from tourney.tournament.refs import ParticipantRef, ParticipantType
from tourney.tournament.state_machine import StateMachine, Transition


class TournamentStatus(str, Enum):
    PENDING = "PENDING"
    UPCOMING = "UPCOMING"
    REGISTRATION_OPEN = "REGISTRATION_OPEN"
    REGISTRATION_CLOSED = "REGISTRATION_CLOSED"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class BracketType(str, Enum):
    SINGLE_ELIMINATION = "SINGLE_ELIMINATION"
    DOUBLE_ELIMINATION = "DOUBLE_ELIMINATION"
    ROUND_ROBIN = "ROUND_ROBIN"
    SWISS = "SWISS"


class CheckInStatus(str, Enum):
    NOT_CHECKED_IN = "NOT_CHECKED_IN"
    CHECKED_IN = "CHECKED_IN"


_S = TournamentStatus
_NON_TERMINAL = [_S.PENDING, _S.UPCOMING, _S.REGISTRATION_OPEN, _S.REGISTRATION_CLOSED, _S.ONGOING]

TOURNAMENT_FSM: StateMachine[TournamentStatus] = StateMachine(
    "Tournament",
    [
        Transition.of(_S.PENDING, "mark_upcoming", _S.UPCOMING),
        Transition.of(_S.PENDING, "open_registration", _S.REGISTRATION_OPEN),
        Transition.of(_S.UPCOMING, "open_registration", _S.REGISTRATION_OPEN),
        Transition.of(_S.REGISTRATION_OPEN, "close_registration", _S.REGISTRATION_CLOSED),
        Transition.of(_S.REGISTRATION_OPEN, "start", _S.ONGOING),
        Transition.of(_S.REGISTRATION_CLOSED, "start", _S.ONGOING),
        Transition.of(_S.ONGOING, "complete", _S.COMPLETED),
        *[Transition.of(state, "cancel", _S.CANCELED) for state in _NON_TERMINAL],
    ],
    terminal=[_S.COMPLETED, _S.CANCELED],
)

# Details are frozen once play begins
_DETAILS_LOCKED = frozenset({_S.ONGOING, _S.COMPLETED, _S.CANCELED})
EDITABLE_FIELDS = frozenset({
    "name", "description", "rules", "start_date", "end_date",
    "max_participants", "entry_fee", "prize_pool", "bracket_type", "settings",
})


class Tournament(Base, UUIDMixin, TimestampMixin):
    """Tournament aggregate root."""

    __tablename__ = "tournaments"
    __table_args__ = (
        CheckConstraint("entry_fee >= 0", name="entry_fee_non_negative"),
        CheckConstraint("prize_pool >= 0", name="prize_pool_non_negative"),
        CheckConstraint("max_participants > 1", name="max_participants_min"),
        CheckConstraint(
            "current_participants >= 0 AND current_participants <= max_participants",
            name="participant_count_bounds",
        ),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    rules: Mapped[str | None] = mapped_column(Text, nullable=True)
    game_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    organizer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    managed_by: Mapped[list[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
        comment="User ids allowed to make tournament decisions",
    )

    status: Mapped[TournamentStatus] = mapped_column(
        SQLEnum(TournamentStatus, name="tournament_status"),
        default=TournamentStatus.PENDING,
        nullable=False,
        index=True,
    )
    bracket_type: Mapped[BracketType] = mapped_column(
        SQLEnum(BracketType, name="bracket_type"),
        default=BracketType.SINGLE_ELIMINATION,
        nullable=False,
    )

    entry_fee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    prize_pool: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    current_participants: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_round: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Tournament {self.id} {self.name!r} {self.status.value}>"

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _apply(self, event: str) -> TournamentStatus:
        previous = self.status
        self.status = TOURNAMENT_FSM.next_state(self.status, event)
        return previous

    def mark_upcoming(self) -> TournamentStatus:
        return self._apply("mark_upcoming")

    def open_registration(self) -> TournamentStatus:
        return self._apply("open_registration")

    def close_registration(self) -> TournamentStatus:
        return self._apply("close_registration")

    def start(self) -> TournamentStatus:
        previous = self._apply("start")
        if not self.current_round:
            self.current_round = 1
        return previous

    def complete(self) -> TournamentStatus:
        previous = self._apply("complete")
        if self.end_date is None:
            self.end_date = utcnow()
        return previous

    def cancel(self, reason: str | None = None) -> TournamentStatus:
        previous = self._apply("cancel")
        self.cancel_reason = reason
        return previous

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return TOURNAMENT_FSM.is_terminal(self.status)

    @property
    def has_started(self) -> bool:
        return self.status in (_S.ONGOING, _S.COMPLETED)

    def is_full(self) -> bool:
        return self.current_participants >= self.max_participants

    def can_register(self) -> bool:
        return self.status == _S.REGISTRATION_OPEN and not self.is_full()

    def is_managed_by(self, user_id: str) -> bool:
        return user_id == self.organizer_id or user_id in (self.managed_by or [])

    def update_details(self, **changes: Any) -> None:
        """Edit descriptive fields before the tournament begins."""
        if self.status in _DETAILS_LOCKED:
            raise InvalidTransitionError(
                f"Cannot update tournament details in status {self.status.value}",
                entity="Tournament",
                from_state=self.status.value,
                event="update_details",
            )
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields cannot be edited: {', '.join(sorted(unknown))}",
                details={"fields": sorted(unknown)},
            )

        max_participants = changes.get("max_participants", self.max_participants)
        if max_participants < max(2, self.current_participants):
            raise ValidationError(
                "max_participants must be at least 2 and not below current registrations",
                details={"currentParticipants": self.current_participants},
            )
        for money_field in ("entry_fee", "prize_pool"):
            if changes.get(money_field, 0) < 0:
                raise ValidationError(f"{money_field} must not be negative")
        start = as_utc(changes.get("start_date", self.start_date))
        end = as_utc(changes.get("end_date", self.end_date))
        if end is not None and start is not None and end < start:
            raise ValidationError("end_date must not precede start_date")

        for key, value in changes.items():
            setattr(self, key, value)


class TournamentParticipant(Base, UUIDMixin, TimestampMixin):
    """A user or team registered for a tournament."""

    __tablename__ = "tournament_participants"
    __table_args__ = (
        UniqueConstraint("tournament_id", "participant_id", name="uq_tournament_participant"),
        CheckConstraint("seed IS NULL OR seed > 0", name="seed_positive"),
    )

    tournament_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    participant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    participant_type: Mapped[ParticipantType] = mapped_column(
        SQLEnum(ParticipantType, name="participant_type"),
        nullable=False,
    )
    payer_user_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="User whose wallet paid the entry fee",
    )

    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    check_in_status: Mapped[CheckInStatus] = mapped_column(
        SQLEnum(CheckInStatus, name="check_in_status"),
        default=CheckInStatus.NOT_CHECKED_IN,
        nullable=False,
    )
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    seed: Mapped[int | None] = mapped_column(Integer, nullable=True)

    entry_fee_transaction_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("wallet_transactions.id", ondelete="RESTRICT"),
        nullable=True,
    )
    refund_transaction_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("wallet_transactions.id", ondelete="RESTRICT"),
        nullable=True,
    )

    @property
    def ref(self) -> ParticipantRef:
        return ParticipantRef(ParticipantType(self.participant_type), self.participant_id)

    @property
    def is_checked_in(self) -> bool:
        return self.check_in_status == CheckInStatus.CHECKED_IN

    def check_in(self) -> None:
        if self.is_checked_in:
            return
        self.check_in_status = CheckInStatus.CHECKED_IN
        self.checked_in_at = utcnow()

    def undo_check_in(self) -> None:
        if not self.is_checked_in:
            return
        self.check_in_status = CheckInStatus.NOT_CHECKED_IN
        self.checked_in_at = None

    def assign_seed(self, seed: int | None) -> None:
        if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int) or seed <= 0):
            raise ValidationError(
                "Seed must be a positive integer or None",
                details={"seed": seed},
            )
        self.seed = seed

    def __repr__(self) -> str:
        return f"<TournamentParticipant {self.participant_type.value}:{self.participant_id}>"
