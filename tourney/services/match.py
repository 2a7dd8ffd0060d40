"""Match lifecycle: results, confirmation, disputes and bracket progression.

Every mutating call locks the match row (``SELECT ... FOR UPDATE``) before it
reads the status, and keeps the lock until the unit of work commits.

Bracket progression runs whenever a match enters COMPLETED. It is
idempotent: an entrant already present in the next match is never inserted
again, so re-completing a match (after a dispute) cannot duplicate anyone.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select

from tourney.errors import (
    ConflictError,
    DisputeAlreadyOpenError,
    ForbiddenError,
    MatchNotDisputableError,
    NotFoundError,
    NotParticipantError,
)
from tourney.models.base import as_utc, utcnow
from tourney.models.dispute import OPEN_STATUSES, DisputeTicket
from tourney.models.match import (
    CANCELABLE_STATUSES,
    MATCH_FSM,
    RETRACTABLE_STATUSES,
    Match,
    MatchStatus,
)
from tourney.models.tournament import Tournament
from tourney.services.tournament import TournamentService
from tourney.tournament.events import DomainEvent, DomainEventType
from tourney.tournament.refs import Caller, ParticipantRef
from tourney.utils.db import UnitOfWork

logger = logging.getLogger(__name__)

DEFAULT_DISPUTE_WINDOW = timedelta(hours=24)


class MatchService:
    """Match state transitions and bracket progression."""

    def __init__(
        self,
        uow: UnitOfWork,
        *,
        dispute_window: timedelta = DEFAULT_DISPUTE_WINDOW,
    ) -> None:
        self.uow = uow
        self.session = uow.session
        self.dispute_window = dispute_window

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get(self, match_id: str, *, lock: bool = False) -> Match:
        query = select(Match).where(Match.id == match_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        match = await self.session.scalar(query)
        if match is None:
            raise NotFoundError("Match", match_id)
        return match

    async def list_matches(
        self,
        tournament_id: str,
        round_number: int | None = None,
    ) -> list[Match]:
        query = (
            select(Match)
            .where(Match.tournament_id == tournament_id)
            .order_by(Match.round_number, Match.match_number_in_round)
        )
        if round_number is not None:
            query = query.where(Match.round_number == round_number)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def lock_with_tournament(self, match_id: str) -> tuple[Tournament, Match]:
        """Lock the owning tournament, then the match (settlement locks in the same order)."""
        unlocked = await self.get(match_id)
        tournament = await TournamentService(self.uow).get(unlocked.tournament_id, lock=True)
        return tournament, await self.get(match_id, lock=True)

    async def find_open_dispute(self, match_id: str) -> DisputeTicket | None:
        return await self.session.scalar(
            select(DisputeTicket).where(
                DisputeTicket.match_id == match_id,
                DisputeTicket.status.in_(OPEN_STATUSES),
            )
        )

    async def add_match(
        self,
        tournament_id: str,
        round_number: int,
        match_number_in_round: int,
        *,
        participant1: ParticipantRef | None = None,
        participant2: ParticipantRef | None = None,
        next_match_id: str | None = None,
        next_match_loser_id: str | None = None,
        scheduled_time: datetime | None = None,
    ) -> Match:
        """Persist a bracket slot produced by the bracket generator."""
        match = Match(
            tournament_id=tournament_id,
            round_number=round_number,
            match_number_in_round=match_number_in_round,
            status=MatchStatus.PENDING,
            next_match_id=next_match_id,
            next_match_loser_id=next_match_loser_id,
            scheduled_time=scheduled_time,
            result_proof_urls=[],
            is_confirmed=False,
            extra={},
        )
        match.set_slot(1, participant1)
        match.set_slot(2, participant2)
        self.session.add(match)
        await self.session.flush()
        return match

    # =========================================================================
    # Play
    # =========================================================================

    async def schedule(self, match_id: str, scheduled_time: datetime | None = None) -> Match:
        match = await self.get(match_id, lock=True)
        match.schedule(scheduled_time)
        await self.session.flush()
        return match

    async def start_match(self, match_id: str, caller: Caller) -> Match:
        match = await self.get(match_id, lock=True)
        if not caller.is_moderator and self._acting_participant(match, caller) is None:
            raise NotParticipantError(match.id, caller.user_id)
        match.start()
        await self.session.flush()
        return match

    async def request_scores(self, match_id: str) -> Match:
        match = await self.get(match_id, lock=True)
        match.request_scores()
        await self.session.flush()
        return match

    async def submit_result(
        self,
        match_id: str,
        caller: Caller,
        winner_id: str | None,
        participant1_score: int | None,
        participant2_score: int | None,
        proof_url: str | None = None,
    ) -> Match:
        """Report a result; the opponent (or a moderator) must confirm it.

        Raises:
            InvalidMatchStatusError: match is not IN_PROGRESS/AWAITING_SCORES
            NotParticipantError: caller does not play in this match
            InvalidWinnerError: winner is not one of the participants
        """
        match = await self.get(match_id, lock=True)
        submitter = self._acting_participant(match, caller)
        if submitter is None:
            raise NotParticipantError(match.id, caller.user_id)

        match.submit_result(
            submitter.id, winner_id, participant1_score, participant2_score, proof_url
        )
        await self.session.flush()
        opponent = match.opponent_of(submitter.id)

        logger.info(
            f"Result submitted for match {match.id} by {submitter.id}: "
            f"{participant1_score}-{participant2_score} winner={winner_id}"
        )
        self.uow.emit(DomainEvent(
            event_type=DomainEventType.MATCH_RESULT_SUBMITTED,
            tournament_id=match.tournament_id,
            match_id=match.id,
            user_id=caller.user_id,
            data={
                "submitted_by": submitter.id,
                "winner_id": match.winner_id,
                "participant1_score": match.participant1_score,
                "participant2_score": match.participant2_score,
                "awaiting_confirmation_from": opponent.id if opponent else None,
            },
        ))
        return match

    async def confirm_result(self, match_id: str, caller: Caller) -> Match:
        """Accept the submitted result. The submitter cannot confirm their own result."""
        match = await self.get(match_id, lock=True)
        if not caller.is_moderator:
            acting = self._acting_participant(match, caller)
            if acting is None:
                raise NotParticipantError(match.id, caller.user_id)
            if acting.id == match.result_submitted_by:
                raise ForbiddenError(
                    "The submitter cannot confirm their own result",
                    details={"matchId": match.id},
                )

        match.confirm_result()
        await self.session.flush()
        await self.progress_bracket(match)
        return match

    async def award_bye(self, match_id: str) -> Match:
        match = await self.get(match_id, lock=True)
        winner = match.award_bye()
        await self.session.flush()
        logger.info(f"Bye awarded in match {match.id} to {winner.id}")
        await self.progress_bracket(match)
        return match

    async def cancel_match(self, match_id: str, reason: str | None = None) -> Match:
        match = await self.get(match_id, lock=True)
        match.cancel(reason)
        await self.session.flush()
        return match

    async def cancel_open_matches(self, tournament_id: str, reason: str | None = None) -> int:
        """Cancel every not-yet-finished match of a tournament."""
        result = await self.session.execute(
            select(Match)
            .where(
                Match.tournament_id == tournament_id,
                Match.status.in_(CANCELABLE_STATUSES),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        matches = list(result.scalars().all())
        for match in matches:
            match.cancel(reason)
        await self.session.flush()
        return len(matches)

    # =========================================================================
    # Disputes
    # =========================================================================

    async def raise_dispute(self, match_id: str, caller: Caller, reason: str) -> DisputeTicket:
        """Contest a result awaiting confirmation, or a completed one inside the window.

        Raises:
            DisputeAlreadyOpenError: an OPEN/UNDER_REVIEW ticket exists
            MatchNotDisputableError: status, window or a finished tournament
                does not allow a dispute
            NotParticipantError: caller neither plays nor moderates
        """
        tournament, match = await self.lock_with_tournament(match_id)
        reporter = self._acting_participant(match, caller)
        if reporter is None and not caller.is_moderator:
            raise NotParticipantError(match.id, caller.user_id)

        if await self.find_open_dispute(match.id) is not None:
            raise DisputeAlreadyOpenError(match.id)
        if tournament.is_terminal:
            raise MatchNotDisputableError(
                f"Tournament is {tournament.status.value}; its results are final",
                entity="Match",
                from_state=match.status.value,
                event="dispute",
                details={"tournamentStatus": tournament.status.value},
            )
        if not MATCH_FSM.can(match.status, "dispute"):
            raise MatchNotDisputableError(
                f"Match in status {match.status.value} cannot be disputed",
                entity="Match",
                from_state=match.status.value,
                event="dispute",
            )
        if match.status == MatchStatus.COMPLETED and not self._within_dispute_window(match):
            raise MatchNotDisputableError(
                "The dispute window for this match has closed",
                entity="Match",
                from_state=match.status.value,
                event="dispute",
                details={"windowHours": self.dispute_window.total_seconds() / 3600},
            )

        ticket = DisputeTicket.open(
            match.id, reporter.id if reporter else caller.user_id, reason
        )
        match.mark_disputed()
        self.session.add(ticket)
        await self.session.flush()

        logger.info(f"Dispute {ticket.id} opened on match {match.id}")
        self.uow.emit(DomainEvent(
            event_type=DomainEventType.DISPUTE_OPENED,
            tournament_id=match.tournament_id,
            match_id=match.id,
            user_id=caller.user_id,
            data={"dispute_id": ticket.id, "reason": ticket.reason},
        ))
        return ticket

    async def apply_dispute_resolution(
        self,
        match: Match,
        winner_id: str | None,
        moderator_notes: str | None,
        new_status: MatchStatus,
    ) -> Match:
        """Move a locked DISPUTED match to its resolved status.

        If the match had already fed its winner into the next round and the
        outcome changed, the old entrant is pulled back out first. That is only
        possible while the next match has not started.
        """
        previous_winner = match.winner
        previous_loser = match.loser
        was_progressed = match.progressed_at is not None

        match.resolve_dispute(winner_id, moderator_notes, new_status)

        outcome_changed = (
            new_status == MatchStatus.SCHEDULED
            or (previous_winner.id if previous_winner else None) != match.winner_id
        )
        if was_progressed and outcome_changed:
            for next_id, entrant in (
                (match.next_match_id, previous_winner),
                (match.next_match_loser_id, previous_loser),
            ):
                if next_id and entrant:
                    await self._retract(next_id, entrant.id)
            match.progressed_at = None

        await self.session.flush()
        if new_status == MatchStatus.COMPLETED:
            await self.progress_bracket(match)
        return match

    # =========================================================================
    # Bracket progression
    # =========================================================================

    async def progress_bracket(self, match: Match) -> None:
        """Place winner and loser into their next matches. Safe to repeat."""
        if match.status != MatchStatus.COMPLETED:
            return

        winner, loser = match.winner, match.loser
        if winner and match.next_match_id:
            await self._place(match.next_match_id, winner, match.preferred_next_slot)
        if loser and match.next_match_loser_id:
            await self._place(match.next_match_loser_id, loser, match.preferred_next_slot)

        first_time = match.progressed_at is None
        if first_time:
            match.progressed_at = utcnow()
        await self.session.flush()

        if first_time:
            self.uow.emit(DomainEvent(
                event_type=DomainEventType.MATCH_COMPLETED,
                tournament_id=match.tournament_id,
                match_id=match.id,
                data={
                    "winner_id": match.winner_id,
                    "participant1_score": match.participant1_score,
                    "participant2_score": match.participant2_score,
                    "next_match_id": match.next_match_id,
                },
            ))

    async def _place(self, next_match_id: str, entrant: ParticipantRef, preferred_slot: int) -> None:
        next_match = await self.get(next_match_id, lock=True)
        if next_match.status == MatchStatus.CANCELED or next_match.has_participant(entrant.id):
            return

        other_slot = 2 if preferred_slot == 1 else 1
        if next_match.slot_is_empty(preferred_slot):
            slot = preferred_slot
        elif next_match.slot_is_empty(other_slot):
            slot = other_slot
        else:
            raise ConflictError(
                "Next match already has two participants",
                details={"nextMatchId": next_match.id, "entrantId": entrant.id},
            )

        next_match.set_slot(slot, entrant)
        if (
            next_match.status == MatchStatus.PENDING
            and not next_match.slot_is_empty(1)
            and not next_match.slot_is_empty(2)
        ):
            next_match.schedule()
        logger.debug(f"Placed {entrant.id} into match {next_match.id} slot {slot}")

    async def _retract(self, next_match_id: str, participant_id: str) -> None:
        next_match = await self.get(next_match_id, lock=True)
        if not next_match.has_participant(participant_id):
            return
        if next_match.status not in RETRACTABLE_STATUSES:
            raise ConflictError(
                "Next match already started; the previous winner cannot be replaced",
                details={"nextMatchId": next_match.id, "status": next_match.status.value},
            )

        slot = 1 if next_match.participant1_id == participant_id else 2
        next_match.set_slot(slot, None)
        if next_match.status == MatchStatus.SCHEDULED:
            next_match.unschedule()

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _acting_participant(match: Match, caller: Caller) -> ParticipantRef | None:
        for participant in match.participants():
            if caller.acts_for(participant):
                return participant
        return None

    def _within_dispute_window(self, match: Match) -> bool:
        completed_at = as_utc(match.completed_at)
        if completed_at is None:
            return True
        return utcnow() - completed_at <= self.dispute_window
