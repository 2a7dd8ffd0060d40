"""Shared fixtures: a file-backed SQLite database per test plus scenario helpers."""

from collections.abc import AsyncGenerator
from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio

from tourney.config import Settings
from tourney.models.base import utcnow
from tourney.models.tournament import Tournament
from tourney.services.match import MatchService
from tourney.services.registry import ParticipantRegistry
from tourney.services.tournament import TournamentService
from tourney.services.wallet import WalletLedger
from tourney.tournament.event_bus import DomainEventBus
from tourney.tournament.events import DomainEvent, DomainEventType
from tourney.tournament.refs import Caller, ParticipantRef, Role
from tourney.utils.db import Database, create_schema

ORGANIZER = "organizer-1"


def player(user_id: str, *team_ids: str) -> Caller:
    return Caller(user_id, frozenset({Role.PLAYER}), frozenset(team_ids))


MODERATOR = Caller("mod-1", frozenset({Role.MODERATOR}))
SECOND_MODERATOR = Caller("mod-2", frozenset({Role.MODERATOR}))
MANAGER = Caller("manager-1", frozenset({Role.TOURNAMENT_MANAGER}))
ADMIN = Caller("admin-1", frozenset({Role.ADMIN}))


# =============================================================================
# Infrastructure
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        app_env="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tourney.db'}",
    )


@pytest.fixture
def event_bus() -> DomainEventBus:
    return DomainEventBus()


@pytest.fixture
def published(event_bus: DomainEventBus) -> list[DomainEvent]:
    """Every event the bus delivers, in publish order."""
    events: list[DomainEvent] = []

    async def record(event: DomainEvent) -> None:
        events.append(event)

    event_bus.subscribe(list(DomainEventType), record)
    return events


@pytest_asyncio.fixture
async def db(settings: Settings, event_bus: DomainEventBus) -> AsyncGenerator[Database, None]:
    database = Database(settings, event_bus=event_bus)
    await database.open()
    await create_schema(database)
    yield database
    await database.close()


# =============================================================================
# Scenario helpers
# =============================================================================


class Scenario:
    """Shortcuts that each run in their own committed unit of work."""

    def __init__(self, db: Database):
        self.db = db

    async def wallet(self, user_id: str, balance: int = 0) -> str:
        async with self.db.unit_of_work() as uow:
            ledger = WalletLedger(uow.session)
            wallet = await ledger.open_wallet(user_id)
            if balance:
                await ledger.credit(wallet.id, balance, f"seed:{user_id}:{uuid4()}")
            return wallet.id

    async def balance(self, user_id: str) -> int:
        async with self.db.unit_of_work() as uow:
            wallet = await WalletLedger(uow.session).get_wallet_for_user(user_id)
            return wallet.balance

    async def tournament(self, *, open_registration: bool = True, **overrides) -> str:
        values = {
            "name": "Spring Cup",
            "game_id": "game-1",
            "organizer_id": ORGANIZER,
            "max_participants": 8,
            "start_date": utcnow() + timedelta(days=1),
        }
        values.update(overrides)
        async with self.db.unit_of_work() as uow:
            service = TournamentService(uow)
            tournament = await service.create_tournament(**values)
            if open_registration:
                await service.open_registration(tournament.id)
            return tournament.id

    async def get_tournament(self, tournament_id: str) -> Tournament:
        async with self.db.unit_of_work() as uow:
            return await TournamentService(uow).get(tournament_id)

    async def register(self, tournament_id: str, *user_ids: str) -> None:
        for user_id in user_ids:
            async with self.db.unit_of_work() as uow:
                await ParticipantRegistry(uow).register(tournament_id, ParticipantRef.user(user_id))

    async def transition(self, tournament_id: str, event: str) -> None:
        async with self.db.unit_of_work() as uow:
            await TournamentService(uow).transition(tournament_id, event)

    async def bracket(self, tournament_id: str, players: list[str]) -> tuple[str, str, str]:
        """Four-player single elimination: two scheduled semifinals feeding a final."""
        a, b, c, d = players
        async with self.db.unit_of_work() as uow:
            matches = MatchService(uow)
            final = await matches.add_match(tournament_id, 2, 1)
            semi1 = await matches.add_match(
                tournament_id, 1, 1,
                participant1=ParticipantRef.user(a),
                participant2=ParticipantRef.user(b),
                next_match_id=final.id,
            )
            semi2 = await matches.add_match(
                tournament_id, 1, 2,
                participant1=ParticipantRef.user(c),
                participant2=ParticipantRef.user(d),
                next_match_id=final.id,
            )
            await matches.schedule(semi1.id)
            await matches.schedule(semi2.id)
            return semi1.id, semi2.id, final.id

    async def report(self, match_id: str, winner: str, loser: str, *, score: tuple[int, int] = (2, 1)):
        """Start the match and submit a result from the winner; leaves it AWAITING_CONFIRMATION."""
        async with self.db.unit_of_work() as uow:
            matches = MatchService(uow)
            await matches.start_match(match_id, player(winner))
            match = await matches.get(match_id)
            s_winner, s_loser = score
            if match.participant1_id == winner:
                s1, s2 = s_winner, s_loser
            else:
                s1, s2 = s_loser, s_winner
            await matches.submit_result(match_id, player(winner), winner, s1, s2)

    async def play(self, match_id: str, winner: str, loser: str, *, score: tuple[int, int] = (2, 1)):
        """Report and confirm a result."""
        await self.report(match_id, winner, loser, score=score)
        async with self.db.unit_of_work() as uow:
            await MatchService(uow).confirm_result(match_id, player(loser))

    async def match(self, match_id: str):
        async with self.db.unit_of_work() as uow:
            return await MatchService(uow).get(match_id)


@pytest.fixture
def scenario(db: Database) -> Scenario:
    return Scenario(db)
