"""Dispute resolution engine.

Resolution locks the tournament, then the match, then the ticket (the same
order everywhere, so two moderators cannot deadlock) and re-reads the ticket
status after the lock. A moderator who loses a resolve race gets
AlreadyResolvedError and changes nothing.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select, update

from tourney.errors import (
    AlreadyResolvedError,
    AlreadyTerminalError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tourney.models.dispute import (
    OPEN_STATUSES,
    RESOLUTION_STATUSES,
    DisputeStatus,
    DisputeTicket,
)
from tourney.models.match import Match, MatchStatus
from tourney.services.match import DEFAULT_DISPUTE_WINDOW, MatchService
from tourney.tournament.events import DomainEvent, DomainEventType
from tourney.tournament.refs import Caller
from tourney.utils.db import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreOverrides:
    """Moderator-supplied scores, written to the match as given.

    ``winner_id`` names the winner for the outcomes that otherwise keep the
    reported one (no action, closed as invalid).
    """

    participant1_score: int | None = None
    participant2_score: int | None = None
    winner_id: str | None = None


def _participant1(match: Match) -> str | None:
    return match.participant1_id


def _participant2(match: Match) -> str | None:
    return match.participant2_id


def _no_winner(match: Match) -> str | None:
    return None


def _keep_winner(match: Match) -> str | None:
    return match.winner_id


# resolution -> (winner picker, match status after resolution)
RESOLUTION_OUTCOMES = {
    DisputeStatus.RESOLVED_PARTICIPANT1_WIN: (_participant1, MatchStatus.COMPLETED),
    DisputeStatus.RESOLVED_PARTICIPANT2_WIN: (_participant2, MatchStatus.COMPLETED),
    DisputeStatus.RESOLVED_REPLAY_MATCH: (_no_winner, MatchStatus.SCHEDULED),
    DisputeStatus.RESOLVED_NO_ACTION: (_keep_winner, MatchStatus.COMPLETED),
    DisputeStatus.CLOSED_INVALID: (_keep_winner, MatchStatus.COMPLETED),
}


class DisputeService:
    """Opens, reviews and resolves dispute tickets."""

    def __init__(self, uow: UnitOfWork, *, dispute_window=DEFAULT_DISPUTE_WINDOW) -> None:
        self.uow = uow
        self.session = uow.session
        self.matches = MatchService(uow, dispute_window=dispute_window)

    async def get(self, dispute_id: str, *, lock: bool = False) -> DisputeTicket:
        query = select(DisputeTicket).where(DisputeTicket.id == dispute_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        ticket = await self.session.scalar(query)
        if ticket is None:
            raise NotFoundError("DisputeTicket", dispute_id)
        return ticket

    async def list_disputes(
        self,
        moderator: Caller,
        status: DisputeStatus | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DisputeTicket]:
        self._require_moderator(moderator)
        query = select(DisputeTicket).order_by(DisputeTicket.created_at).offset(offset).limit(limit)
        if status is not None:
            query = query.where(DisputeTicket.status == status)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def open(self, match_id: str, caller: Caller, reason: str) -> DisputeTicket:
        return await self.matches.raise_dispute(match_id, caller, reason)

    async def start_review(self, dispute_id: str, moderator: Caller) -> DisputeTicket:
        self._require_moderator(moderator)
        ticket = await self.get(dispute_id, lock=True)
        ticket.start_review(moderator.user_id)
        await self.session.flush()
        logger.info(f"Dispute {ticket.id} under review by {moderator.user_id}")
        return ticket

    async def resolve(
        self,
        dispute_id: str,
        moderator: Caller,
        resolution_status: DisputeStatus,
        resolution_details: str,
        overrides: ScoreOverrides | None = None,
    ) -> DisputeTicket:
        """Close a dispute and apply its outcome to the match.

        Raises:
            ForbiddenError: caller is not a moderator
            ValidationError: not a resolution status, or no details given
            AlreadyResolvedError: ticket already closed (possibly by a concurrent call)
            ConflictError: winner must change but the next match already started
            AlreadyTerminalError: the tournament is finished and the outcome
                would change its result
        """
        self._require_moderator(moderator)
        if resolution_status not in RESOLUTION_STATUSES:
            raise ValidationError(
                f"{resolution_status.value} is not a resolution status",
                details={"allowed": [s.value for s in RESOLUTION_STATUSES]},
            )
        if not resolution_details or not resolution_details.strip():
            raise ValidationError("Resolution details are required")

        unlocked = await self.get(dispute_id)
        tournament, match = await self.matches.lock_with_tournament(unlocked.match_id)
        ticket = await self.get(dispute_id, lock=True)

        # Validates the ticket status; raises AlreadyResolvedError for a closed one
        ticket.resolve(resolution_status, resolution_details.strip(), moderator.user_id)
        await self._close_ticket(ticket)

        pick_winner, match_status = RESOLUTION_OUTCOMES[resolution_status]
        winner_id = pick_winner(match)
        if overrides is not None and overrides.winner_id is not None and pick_winner is _keep_winner:
            winner_id = overrides.winner_id

        if tournament.is_terminal and (
            match_status != MatchStatus.COMPLETED or winner_id != match.winner_id
        ):
            raise AlreadyTerminalError(
                f"Tournament is {tournament.status.value}; only resolutions that keep the result are allowed",
                entity="Tournament",
                from_state=tournament.status.value,
                event="resolve_dispute",
                details={"matchId": match.id, "resolution": resolution_status.value},
            )

        await self.matches.apply_dispute_resolution(
            match, winner_id, resolution_details.strip(), match_status
        )
        if overrides is not None:
            if overrides.participant1_score is not None:
                match.participant1_score = overrides.participant1_score
            if overrides.participant2_score is not None:
                match.participant2_score = overrides.participant2_score

        await self.session.flush()

        logger.info(
            f"Dispute {ticket.id} resolved as {resolution_status.value} by {moderator.user_id}; "
            f"match {match.id} -> {match.status.value}"
        )
        self.uow.emit(DomainEvent(
            event_type=DomainEventType.DISPUTE_RESOLVED,
            tournament_id=match.tournament_id,
            match_id=match.id,
            user_id=moderator.user_id,
            data={
                "dispute_id": ticket.id,
                "resolution": resolution_status.value,
                "winner_id": match.winner_id,
                "match_status": match.status.value,
                "reporter_id": ticket.reporter_id,
            },
        ))
        return ticket

    async def _close_ticket(self, ticket: DisputeTicket) -> None:
        """Write the resolution only if the row is still open."""
        result = await self.session.execute(
            update(DisputeTicket)
            .where(
                DisputeTicket.id == ticket.id,
                DisputeTicket.status.in_(OPEN_STATUSES),
            )
            .values(
                status=ticket.status,
                resolution_details=ticket.resolution_details,
                moderator_id=ticket.moderator_id,
                resolved_at=ticket.resolved_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyResolvedError(
                "Dispute was resolved by another moderator",
                entity="DisputeTicket",
                event="resolve",
                details={"disputeId": ticket.id},
            )
        await self.session.refresh(ticket)

    @staticmethod
    def _require_moderator(caller: Caller) -> None:
        if not caller.is_moderator:
            raise ForbiddenError(
                "Only moderators can handle disputes",
                details={"userId": caller.user_id},
            )
