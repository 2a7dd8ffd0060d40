"""TournamentService: creation, lifecycle transitions and events."""

from datetime import timedelta

import pytest

from tourney.errors import (
    AlreadyTerminalError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from tourney.models.base import as_utc, utcnow
from tourney.models.tournament import TournamentStatus
from tourney.services.tournament import TournamentService
from tourney.tournament.events import DomainEventType


async def _call(db, method: str, *args, **kwargs):
    async with db.unit_of_work() as uow:
        return await getattr(TournamentService(uow), method)(*args, **kwargs)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_starts_pending(self, scenario):
        tournament_id = await scenario.tournament(open_registration=False, entry_fee=500)

        tournament = await scenario.get_tournament(tournament_id)

        assert tournament.status == TournamentStatus.PENDING
        assert tournament.current_participants == 0
        assert tournament.entry_fee == 500
        assert tournament.is_managed_by("organizer-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": "  "},
            {"max_participants": 1},
            {"entry_fee": -1},
            {"end_date": utcnow() - timedelta(days=3)},
        ],
    )
    async def test_invalid_definitions(self, scenario, overrides):
        with pytest.raises(ValidationError):
            await scenario.tournament(open_registration=False, **overrides)

    @pytest.mark.asyncio
    async def test_unknown_tournament(self, db):
        with pytest.raises(NotFoundError):
            await _call(db, "get", "00000000-0000-0000-0000-000000000000")


class TestTransitions:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, db, scenario, published):
        tournament_id = await scenario.tournament(open_registration=False)

        await _call(db, "mark_upcoming", tournament_id)
        await _call(db, "open_registration", tournament_id)
        await _call(db, "close_registration", tournament_id)
        started = await _call(db, "start", tournament_id)
        completed = await _call(db, "complete", tournament_id)

        assert started.current_round == 1
        assert completed.status == TournamentStatus.COMPLETED
        assert completed.end_date is not None
        changes = [
            (e.data["from"], e.data["to"])
            for e in published
            if e.event_type == DomainEventType.TOURNAMENT_STATUS_CHANGED
        ]
        assert changes == [
            ("PENDING", "UPCOMING"),
            ("UPCOMING", "REGISTRATION_OPEN"),
            ("REGISTRATION_OPEN", "REGISTRATION_CLOSED"),
            ("REGISTRATION_CLOSED", "ONGOING"),
            ("ONGOING", "COMPLETED"),
        ]

    @pytest.mark.asyncio
    async def test_rejected_transition_changes_nothing(self, db, scenario, published):
        tournament_id = await scenario.tournament(open_registration=False)

        with pytest.raises(InvalidTransitionError):
            await _call(db, "complete", tournament_id)

        assert (await scenario.get_tournament(tournament_id)).status == TournamentStatus.PENDING
        assert published == []

    @pytest.mark.asyncio
    async def test_cancel_terminal(self, db, scenario):
        tournament_id = await scenario.tournament()
        await _call(db, "cancel", tournament_id, "Sponsor withdrew")

        with pytest.raises(AlreadyTerminalError):
            await _call(db, "cancel", tournament_id)

        tournament = await scenario.get_tournament(tournament_id)
        assert tournament.cancel_reason == "Sponsor withdrew"

    @pytest.mark.asyncio
    async def test_events_dropped_on_rollback(self, db, scenario, published):
        tournament_id = await scenario.tournament(open_registration=False)

        with pytest.raises(RuntimeError):
            async with db.unit_of_work() as uow:
                await TournamentService(uow).mark_upcoming(tournament_id)
                raise RuntimeError("crash before commit")

        assert published == []
        assert (await scenario.get_tournament(tournament_id)).status == TournamentStatus.PENDING


class TestDetails:
    @pytest.mark.asyncio
    async def test_update_before_start(self, db, scenario):
        tournament_id = await scenario.tournament()
        new_start = utcnow() + timedelta(days=10)

        await _call(
            db, "update_details", tournament_id,
            name="Summer Cup", start_date=new_start, settings={"payout_structure": [0.7, 0.3]},
        )

        tournament = await scenario.get_tournament(tournament_id)
        assert tournament.name == "Summer Cup"
        assert as_utc(tournament.start_date) == new_start
        assert tournament.settings == {"payout_structure": [0.7, 0.3]}

    @pytest.mark.asyncio
    async def test_update_locked_after_start(self, db, scenario):
        tournament_id = await scenario.tournament()
        await scenario.transition(tournament_id, "start")

        with pytest.raises(InvalidTransitionError):
            await _call(db, "update_details", tournament_id, name="Renamed")


class TestCounter:
    @pytest.mark.asyncio
    async def test_decrement_at_zero(self, db, scenario):
        tournament_id = await scenario.tournament()

        with pytest.raises(ConflictError):
            async with db.unit_of_work() as uow:
                service = TournamentService(uow)
                await service.decrement_participant_count(await service.get(tournament_id))
