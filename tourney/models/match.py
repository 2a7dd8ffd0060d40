"""Match model and its lifecycle.

A match has two participant slots (slot 2 empty for a bye). Result
submission, confirmation, disputes and dispute resolution all move the
status through MATCH_FSM; ``resolve_dispute`` is the only way out of
DISPUTED.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from tourney.errors import InvalidMatchStatusError, InvalidWinnerError, ValidationError
from tourney.models.base import Base, TimestampMixin, UUIDMixin, utcnow
from tourney.tournament.refs import ParticipantRef, ParticipantType
from tourney.tournament.state_machine import StateMachine, Transition


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_SCORES = "AWAITING_SCORES"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    DISPUTED = "DISPUTED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


_M = MatchStatus

# Statuses a tournament cancellation sweeps to CANCELED
CANCELABLE_STATUSES = (
    _M.PENDING, _M.SCHEDULED, _M.IN_PROGRESS, _M.AWAITING_SCORES, _M.AWAITING_CONFIRMATION,
)
# Next-match statuses from which an entrant may still be swapped out
RETRACTABLE_STATUSES = (_M.PENDING, _M.SCHEDULED)

MATCH_FSM: StateMachine[MatchStatus] = StateMachine(
    "Match",
    [
        Transition.of(_M.PENDING, "schedule", _M.SCHEDULED),
        Transition.of(_M.PENDING, "bye", _M.COMPLETED),
        Transition.of(_M.SCHEDULED, "bye", _M.COMPLETED),
        Transition.of(_M.SCHEDULED, "unschedule", _M.PENDING),
        Transition.of(_M.SCHEDULED, "start", _M.IN_PROGRESS),
        Transition.of(_M.IN_PROGRESS, "request_scores", _M.AWAITING_SCORES),
        Transition.of(_M.IN_PROGRESS, "submit_result", _M.AWAITING_CONFIRMATION),
        Transition.of(_M.AWAITING_SCORES, "submit_result", _M.AWAITING_CONFIRMATION),
        Transition.of(_M.AWAITING_CONFIRMATION, "confirm", _M.COMPLETED),
        Transition.of(_M.AWAITING_CONFIRMATION, "dispute", _M.DISPUTED),
        Transition.of(_M.COMPLETED, "dispute", _M.DISPUTED),
        Transition.of(_M.DISPUTED, "resolve", _M.COMPLETED, _M.SCHEDULED),
        *[Transition.of(state, "cancel", _M.CANCELED) for state in CANCELABLE_STATUSES],
    ],
    terminal=[_M.CANCELED],
    error=InvalidMatchStatusError,
    terminal_error=InvalidMatchStatusError,
)


class Match(Base, UUIDMixin, TimestampMixin):
    """A single bracket match."""

    __tablename__ = "matches"
    __table_args__ = (
        Index("ix_matches_tournament_round", "tournament_id", "round_number", "match_number_in_round"),
    )

    tournament_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    match_number_in_round: Mapped[int] = mapped_column(Integer, nullable=False)

    participant1_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    participant1_type: Mapped[ParticipantType | None] = mapped_column(
        SQLEnum(ParticipantType, name="participant_type"), nullable=True
    )
    participant2_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    participant2_type: Mapped[ParticipantType | None] = mapped_column(
        SQLEnum(ParticipantType, name="participant_type"), nullable=True
    )
    participant1_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    participant2_score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    winner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    winner_type: Mapped[ParticipantType | None] = mapped_column(
        SQLEnum(ParticipantType, name="participant_type"), nullable=True
    )

    status: Mapped[MatchStatus] = mapped_column(
        SQLEnum(MatchStatus, name="match_status"),
        default=MatchStatus.PENDING,
        nullable=False,
        index=True,
    )

    result_proof_urls: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    result_submitted_by: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Participant id that reported the result",
    )
    is_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    moderator_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    next_match_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("matches.id", ondelete="SET NULL"),
        nullable=True,
    )
    next_match_loser_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("matches.id", ondelete="SET NULL"),
        nullable=True,
        comment="Losers-bracket destination (double elimination)",
    )

    scheduled_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    progressed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once the winner/loser were placed into next matches",
    )
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Match {self.id} r{self.round_number}m{self.match_number_in_round} "
            f"{self.status.value}>"
        )

    # -------------------------------------------------------------------------
    # Participants
    # -------------------------------------------------------------------------

    @property
    def participant1(self) -> ParticipantRef | None:
        return ParticipantRef.from_columns(self.participant1_id, self.participant1_type)

    @property
    def participant2(self) -> ParticipantRef | None:
        return ParticipantRef.from_columns(self.participant2_id, self.participant2_type)

    @property
    def winner(self) -> ParticipantRef | None:
        return ParticipantRef.from_columns(self.winner_id, self.winner_type)

    @property
    def loser(self) -> ParticipantRef | None:
        if self.winner_id is None:
            return None
        return self.opponent_of(self.winner_id)

    def participants(self) -> list[ParticipantRef]:
        return [p for p in (self.participant1, self.participant2) if p is not None]

    def has_participant(self, participant_id: str | None) -> bool:
        return participant_id is not None and participant_id in (
            self.participant1_id,
            self.participant2_id,
        )

    def participant_by_id(self, participant_id: str) -> ParticipantRef | None:
        for participant in self.participants():
            if participant.id == participant_id:
                return participant
        return None

    def opponent_of(self, participant_id: str) -> ParticipantRef | None:
        if participant_id == self.participant1_id:
            return self.participant2
        if participant_id == self.participant2_id:
            return self.participant1
        return None

    def slot_is_empty(self, slot: int) -> bool:
        return (self.participant1_id if slot == 1 else self.participant2_id) is None

    def set_slot(self, slot: int, participant: ParticipantRef | None) -> None:
        participant_id = participant.id if participant else None
        participant_type = participant.kind if participant else None
        if slot == 1:
            self.participant1_id, self.participant1_type = participant_id, participant_type
        elif slot == 2:
            self.participant2_id, self.participant2_type = participant_id, participant_type
        else:
            raise ValueError(f"Invalid slot: {slot}")

    @property
    def preferred_next_slot(self) -> int:
        """Odd-numbered matches feed slot 1 of the next match, even ones slot 2."""
        return 1 if self.match_number_in_round % 2 == 1 else 2

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return MATCH_FSM.is_terminal(self.status)

    def _set_winner(self, winner_id: str | None) -> None:
        if winner_id is None:
            self.winner_id = None
            self.winner_type = None
            return
        winner = self.participant_by_id(winner_id)
        if winner is None:
            raise InvalidWinnerError(self.id, winner_id)
        self.winner_id = winner.id
        self.winner_type = winner.kind

    def schedule(self, scheduled_time: datetime | None = None) -> None:
        if self.participant1_id is None or self.participant2_id is None:
            raise InvalidMatchStatusError(
                "Both participants are required to schedule a match",
                entity="Match",
                from_state=self.status.value,
                event="schedule",
            )
        self.status = MATCH_FSM.next_state(self.status, "schedule")
        if scheduled_time is not None:
            self.scheduled_time = scheduled_time

    def unschedule(self) -> None:
        self.status = MATCH_FSM.next_state(self.status, "unschedule")

    def start(self) -> None:
        self.status = MATCH_FSM.next_state(self.status, "start")
        self.actual_start_time = utcnow()

    def request_scores(self) -> None:
        self.status = MATCH_FSM.next_state(self.status, "request_scores")

    def submit_result(
        self,
        submitted_by: str,
        winner_id: str | None,
        participant1_score: int | None,
        participant2_score: int | None,
        proof_url: str | None = None,
    ) -> None:
        new_status = MATCH_FSM.next_state(self.status, "submit_result")
        for score in (participant1_score, participant2_score):
            if score is not None and score < 0:
                raise ValidationError("Scores must not be negative", details={"score": score})
        self._set_winner(winner_id)
        self.participant1_score = participant1_score
        self.participant2_score = participant2_score
        if proof_url:
            self.result_proof_urls = [*(self.result_proof_urls or []), proof_url]
        self.result_submitted_by = submitted_by
        self.is_confirmed = False
        self.actual_end_time = utcnow()
        self.status = new_status

    def confirm_result(self) -> None:
        self.status = MATCH_FSM.next_state(self.status, "confirm")
        self.is_confirmed = True
        self.completed_at = utcnow()

    def mark_disputed(self) -> None:
        self.status = MATCH_FSM.next_state(self.status, "dispute")
        self.is_confirmed = False

    def resolve_dispute(
        self,
        winner_id: str | None,
        moderator_notes: str | None,
        new_status: MatchStatus,
    ) -> None:
        """Leave DISPUTED with a moderator decision.

        SCHEDULED means the match is replayed: winner and scores are cleared.
        """
        self.status = MATCH_FSM.next_state(self.status, "resolve", new_status)
        self.moderator_notes = moderator_notes
        if new_status == MatchStatus.SCHEDULED:
            self._set_winner(None)
            self.participant1_score = None
            self.participant2_score = None
            self.result_submitted_by = None
            self.is_confirmed = False
            self.actual_start_time = None
            self.actual_end_time = None
            self.completed_at = None
        else:
            self._set_winner(winner_id)
            self.is_confirmed = True
            self.completed_at = utcnow()

    def award_bye(self) -> ParticipantRef:
        """Complete a single-participant match in that participant's favour."""
        participants = self.participants()
        if len(participants) != 1:
            raise InvalidMatchStatusError(
                "A bye requires exactly one participant",
                entity="Match",
                from_state=self.status.value,
                event="bye",
            )
        self.status = MATCH_FSM.next_state(self.status, "bye")
        self._set_winner(participants[0].id)
        self.is_confirmed = True
        self.completed_at = utcnow()
        return participants[0]

    def cancel(self, reason: str | None = None) -> None:
        self.status = MATCH_FSM.next_state(self.status, "cancel")
        if reason:
            self.moderator_notes = reason
