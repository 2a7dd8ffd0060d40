"""Tournament aggregate service.

Loads tournaments (optionally with a row lock), runs lifecycle transitions
and owns the participant counter. The counter only moves through the
guarded UPDATEs below, in the transaction that inserts or deletes the
participant row, so a stale read can never push it past ``max_participants``.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update

from tourney.errors import (
    ConflictError,
    NotFoundError,
    RegistrationClosedError,
    TournamentFullError,
    ValidationError,
)
from tourney.models.base import as_utc
from tourney.models.tournament import BracketType, Tournament, TournamentStatus
from tourney.tournament.events import DomainEvent, DomainEventType
from tourney.utils.db import UnitOfWork

logger = logging.getLogger(__name__)


class TournamentService:
    """Tournament lookups, transitions and participant counter."""

    def __init__(self, uow: UnitOfWork) -> None:
        self.uow = uow
        self.session = uow.session

    async def create_tournament(
        self,
        *,
        name: str,
        game_id: str,
        organizer_id: str,
        max_participants: int,
        start_date: datetime,
        end_date: datetime | None = None,
        entry_fee: int = 0,
        prize_pool: int = 0,
        currency: str = "USD",
        bracket_type: BracketType = BracketType.SINGLE_ELIMINATION,
        settings: dict[str, Any] | None = None,
        managed_by: list[str] | None = None,
        description: str | None = None,
    ) -> Tournament:
        if not name or not name.strip():
            raise ValidationError("Tournament name is required")
        if max_participants < 2:
            raise ValidationError("max_participants must be at least 2")
        if entry_fee < 0 or prize_pool < 0:
            raise ValidationError("entry_fee and prize_pool must not be negative")
        if end_date is not None and as_utc(end_date) < as_utc(start_date):
            raise ValidationError("end_date must not precede start_date")

        tournament = Tournament(
            name=name.strip(),
            game_id=game_id,
            organizer_id=organizer_id,
            managed_by=list(managed_by or []),
            status=TournamentStatus.PENDING,
            bracket_type=bracket_type,
            entry_fee=entry_fee,
            prize_pool=prize_pool,
            currency=currency,
            max_participants=max_participants,
            current_participants=0,
            current_round=0,
            start_date=start_date,
            end_date=end_date,
            settings=dict(settings or {}),
            description=description,
        )
        self.session.add(tournament)
        await self.session.flush()
        logger.info(f"Tournament created: {tournament.id} ({tournament.name})")
        return tournament

    async def get(self, tournament_id: str, *, lock: bool = False) -> Tournament:
        query = select(Tournament).where(Tournament.id == tournament_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        tournament = await self.session.scalar(query)
        if tournament is None:
            raise NotFoundError("Tournament", tournament_id)
        return tournament

    # =========================================================================
    # Transitions
    # =========================================================================

    async def transition(self, tournament_id: str, event: str, **kwargs: Any) -> Tournament:
        """Lock the tournament and apply one lifecycle event."""
        tournament = await self.get(tournament_id, lock=True)
        previous = getattr(tournament, event)(**kwargs)
        await self.session.flush()

        logger.info(
            f"Tournament {tournament.id}: {previous.value} -> {tournament.status.value}"
        )
        self.uow.emit(DomainEvent(
            event_type=DomainEventType.TOURNAMENT_STATUS_CHANGED,
            tournament_id=tournament.id,
            data={"from": previous.value, "to": tournament.status.value, "event": event},
        ))
        return tournament

    async def mark_upcoming(self, tournament_id: str) -> Tournament:
        return await self.transition(tournament_id, "mark_upcoming")

    async def open_registration(self, tournament_id: str) -> Tournament:
        return await self.transition(tournament_id, "open_registration")

    async def close_registration(self, tournament_id: str) -> Tournament:
        return await self.transition(tournament_id, "close_registration")

    async def start(self, tournament_id: str) -> Tournament:
        return await self.transition(tournament_id, "start")

    async def complete(self, tournament_id: str) -> Tournament:
        return await self.transition(tournament_id, "complete")

    async def cancel(self, tournament_id: str, reason: str | None = None) -> Tournament:
        return await self.transition(tournament_id, "cancel", reason=reason)

    async def update_details(self, tournament_id: str, **changes: Any) -> Tournament:
        tournament = await self.get(tournament_id, lock=True)
        tournament.update_details(**changes)
        await self.session.flush()
        return tournament

    # =========================================================================
    # Participant counter
    # =========================================================================

    async def increment_participant_count(self, tournament: Tournament) -> None:
        """Add one registration, failing if the tournament filled up meanwhile."""
        result = await self.session.execute(
            update(Tournament)
            .where(
                Tournament.id == tournament.id,
                Tournament.status == TournamentStatus.REGISTRATION_OPEN,
                Tournament.current_participants < Tournament.max_participants,
            )
            .values(current_participants=Tournament.current_participants + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.refresh(tournament)
            if tournament.status != TournamentStatus.REGISTRATION_OPEN:
                raise RegistrationClosedError(tournament.id, tournament.status.value)
            raise TournamentFullError(tournament.id, tournament.max_participants)
        await self.session.refresh(tournament, attribute_names=["current_participants"])

    async def decrement_participant_count(self, tournament: Tournament) -> None:
        result = await self.session.execute(
            update(Tournament)
            .where(
                Tournament.id == tournament.id,
                Tournament.current_participants > 0,
            )
            .values(current_participants=Tournament.current_participants - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "Participant counter is already zero",
                details={"tournamentId": tournament.id},
            )
        await self.session.refresh(tournament, attribute_names=["current_participants"])
