"""ParticipantRegistry: registration, withdrawal, check-in and seeding."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from tourney.errors import (
    AlreadyRegisteredError,
    AlreadyTerminalError,
    ConflictError,
    InsufficientFundsError,
    RegistrationClosedError,
    TournamentFullError,
    ValidationError,
)
from tourney.models.tournament import CheckInStatus, TournamentParticipant
from tourney.models.wallet import TransactionType, WalletTransaction
from tourney.services.registry import ParticipantRegistry
from tourney.services.tournament import TournamentService
from tourney.tournament.events import DomainEventType
from tourney.tournament.refs import ParticipantRef, ParticipantType

FEE = 500


async def _register(db, tournament_id, participant, **kwargs):
    async with db.unit_of_work() as uow:
        return await ParticipantRegistry(uow).register(tournament_id, participant, **kwargs)


async def _withdraw(db, tournament_id, participant_id):
    async with db.unit_of_work() as uow:
        return await ParticipantRegistry(uow).withdraw(tournament_id, participant_id)


async def _row_count(db, tournament_id) -> int:
    async with db.unit_of_work() as uow:
        return await uow.session.scalar(
            select(func.count())
            .select_from(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament_id)
        )


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_charges_fee(self, db, scenario, published):
        await scenario.wallet("alice", 2000)
        tournament_id = await scenario.tournament(entry_fee=FEE)

        row = await _register(db, tournament_id, ParticipantRef.user("alice"))

        assert row.ref == ParticipantRef.user("alice")
        assert row.payer_user_id == "alice"
        assert row.entry_fee_transaction_id is not None
        assert await scenario.balance("alice") == 2000 - FEE
        assert (await scenario.get_tournament(tournament_id)).current_participants == 1
        registered = [e for e in published if e.event_type == DomainEventType.PARTICIPANT_REGISTERED]
        assert registered[0].data["participant_id"] == "alice"

    @pytest.mark.asyncio
    async def test_free_tournament_needs_no_wallet(self, db, scenario):
        tournament_id = await scenario.tournament()

        row = await _register(db, tournament_id, ParticipantRef.user("alice"))

        assert row.entry_fee_transaction_id is None

    @pytest.mark.asyncio
    async def test_team_charged_to_payer(self, db, scenario):
        await scenario.wallet("captain", 1000)
        tournament_id = await scenario.tournament(entry_fee=FEE)

        row = await _register(db, tournament_id, ParticipantRef.team("team-red"), payer_user_id="captain")

        assert row.participant_type == ParticipantType.TEAM
        assert await scenario.balance("captain") == 1000 - FEE

    @pytest.mark.asyncio
    async def test_team_without_payer(self, db, scenario):
        tournament_id = await scenario.tournament(entry_fee=FEE)

        with pytest.raises(ValidationError):
            await _register(db, tournament_id, ParticipantRef.team("team-red"))

    @pytest.mark.asyncio
    async def test_team_needs_payer_even_when_free(self, db, scenario):
        tournament_id = await scenario.tournament()

        with pytest.raises(ValidationError):
            await _register(db, tournament_id, ParticipantRef.team("team-red"))

        assert await _row_count(db, tournament_id) == 0

    @pytest.mark.asyncio
    async def test_registration_closed(self, db, scenario):
        await scenario.wallet("alice", 1000)
        tournament_id = await scenario.tournament(open_registration=False, entry_fee=FEE)

        with pytest.raises(RegistrationClosedError):
            await _register(db, tournament_id, ParticipantRef.user("alice"))

        assert await scenario.balance("alice") == 1000

    @pytest.mark.asyncio
    async def test_duplicate_registration(self, db, scenario):
        await scenario.wallet("alice", 2000)
        tournament_id = await scenario.tournament(entry_fee=FEE)
        await _register(db, tournament_id, ParticipantRef.user("alice"))

        with pytest.raises(AlreadyRegisteredError):
            await _register(db, tournament_id, ParticipantRef.user("alice"))

        assert await scenario.balance("alice") == 2000 - FEE
        assert (await scenario.get_tournament(tournament_id)).current_participants == 1

    @pytest.mark.asyncio
    async def test_full_tournament(self, db, scenario):
        for user_id in ("alice", "bob", "carol"):
            await scenario.wallet(user_id, 1000)
        tournament_id = await scenario.tournament(entry_fee=FEE, max_participants=2)
        await scenario.register(tournament_id, "alice", "bob")

        with pytest.raises(TournamentFullError):
            await _register(db, tournament_id, ParticipantRef.user("carol"))

        assert await scenario.balance("carol") == 1000

    @pytest.mark.asyncio
    async def test_concurrent_registrations_for_last_seat(self, db, scenario):
        for user_id in ("alice", "bob", "carol"):
            await scenario.wallet(user_id, 1000)
        tournament_id = await scenario.tournament(entry_fee=FEE, max_participants=2)
        await scenario.register(tournament_id, "alice")

        outcomes = await asyncio.gather(
            _register(db, tournament_id, ParticipantRef.user("bob")),
            _register(db, tournament_id, ParticipantRef.user("carol")),
            return_exceptions=True,
        )

        registered = [o for o in outcomes if isinstance(o, TournamentParticipant)]
        errors = [o for o in outcomes if isinstance(o, Exception)]
        assert len(registered) == 1
        assert len(errors) == 1
        # TournamentFullError, or a lock conflict on databases that serialize writers
        assert isinstance(errors[0], ConflictError)

        winner = registered[0].participant_id
        loser = "carol" if winner == "bob" else "bob"
        assert await scenario.balance(winner) == 1000 - FEE
        assert await scenario.balance(loser) == 1000
        tournament = await scenario.get_tournament(tournament_id)
        assert tournament.current_participants == 2
        assert await _row_count(db, tournament_id) == 2

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_no_row(self, db, scenario):
        await scenario.wallet("alice", FEE - 1)
        tournament_id = await scenario.tournament(entry_fee=FEE)

        with pytest.raises(InsufficientFundsError):
            await _register(db, tournament_id, ParticipantRef.user("alice"))

        assert await _row_count(db, tournament_id) == 0
        assert (await scenario.get_tournament(tournament_id)).current_participants == 0

    @pytest.mark.asyncio
    async def test_stale_capacity_read_cannot_overfill(self, db, scenario):
        """A registration that saw a free seat loses to one that committed first."""
        for user_id in ("alice", "bob", "carol"):
            await scenario.wallet(user_id, 1000)
        tournament_id = await scenario.tournament(entry_fee=FEE, max_participants=2)
        await scenario.register(tournament_id, "alice")

        with pytest.raises(TournamentFullError):
            async with db.unit_of_work() as uow:
                registry = ParticipantRegistry(uow)
                stale = await registry.tournaments.get(tournament_id)
                assert stale.current_participants == 1

                # bob takes the last seat and commits meanwhile
                await scenario.register(tournament_id, "bob")

                registry.tournaments.get = AsyncMock(return_value=stale)
                await registry.register(tournament_id, ParticipantRef.user("carol"))

        tournament = await scenario.get_tournament(tournament_id)
        assert tournament.current_participants == 2
        assert await _row_count(db, tournament_id) == 2
        assert await scenario.balance("carol") == 1000


class TestWithdraw:
    @pytest.mark.asyncio
    async def test_round_trip_refunds_once(self, db, scenario, published):
        await scenario.wallet("alice", 2000)
        tournament_id = await scenario.tournament(entry_fee=FEE)
        row = await _register(db, tournament_id, ParticipantRef.user("alice"))

        await _withdraw(db, tournament_id, "alice")

        assert await scenario.balance("alice") == 2000
        assert (await scenario.get_tournament(tournament_id)).current_participants == 0
        async with db.unit_of_work() as uow:
            refunds = (await uow.session.execute(
                select(WalletTransaction).where(
                    WalletTransaction.reference_transaction_id == row.entry_fee_transaction_id
                )
            )).scalars().all()
        assert [(r.tx_type, r.amount) for r in refunds] == [(TransactionType.REFUND, FEE)]
        withdrawn = [e for e in published if e.event_type == DomainEventType.PARTICIPANT_WITHDRAWN]
        assert withdrawn[0].data["refund_transaction_id"] == refunds[0].id

    @pytest.mark.asyncio
    async def test_can_register_again_after_withdrawal(self, db, scenario):
        await scenario.wallet("alice", 2000)
        tournament_id = await scenario.tournament(entry_fee=FEE)
        await _register(db, tournament_id, ParticipantRef.user("alice"))
        await _withdraw(db, tournament_id, "alice")

        row = await _register(db, tournament_id, ParticipantRef.user("alice"))

        assert row.entry_fee_transaction_id is not None
        assert await scenario.balance("alice") == 2000 - FEE
        assert (await scenario.get_tournament(tournament_id)).current_participants == 1

    @pytest.mark.asyncio
    async def test_withdraw_after_start_forfeits_fee(self, db, scenario):
        await scenario.wallet("alice", 2000)
        await scenario.wallet("bob", 2000)
        tournament_id = await scenario.tournament(entry_fee=FEE)
        await scenario.register(tournament_id, "alice", "bob")
        await scenario.transition(tournament_id, "start")

        await _withdraw(db, tournament_id, "alice")

        assert await scenario.balance("alice") == 2000 - FEE
        assert (await scenario.get_tournament(tournament_id)).current_participants == 1

    @pytest.mark.asyncio
    async def test_withdraw_from_canceled(self, db, scenario):
        tournament_id = await scenario.tournament()
        await scenario.register(tournament_id, "alice")
        await scenario.transition(tournament_id, "cancel")

        with pytest.raises(AlreadyTerminalError):
            await _withdraw(db, tournament_id, "alice")

    @pytest.mark.asyncio
    async def test_counter_matches_rows(self, db, scenario):
        tournament_id = await scenario.tournament()
        await scenario.register(tournament_id, "a", "b", "c", "d")
        await _withdraw(db, tournament_id, "b")
        await _withdraw(db, tournament_id, "d")
        await scenario.register(tournament_id, "e")

        tournament = await scenario.get_tournament(tournament_id)
        assert tournament.current_participants == await _row_count(db, tournament_id) == 3


class TestCheckInAndSeeding:
    @pytest.mark.asyncio
    async def test_check_in_is_idempotent(self, db, scenario):
        tournament_id = await scenario.tournament()
        row = await _register(db, tournament_id, ParticipantRef.user("alice"))

        async with db.unit_of_work() as uow:
            registry = ParticipantRegistry(uow)
            first = await registry.check_in(row.id)
            checked_at = first.checked_in_at
            second = await registry.check_in(row.id)

        assert second.check_in_status == CheckInStatus.CHECKED_IN
        assert second.checked_in_at == checked_at

        async with db.unit_of_work() as uow:
            undone = await ParticipantRegistry(uow).undo_check_in(row.id)
        assert undone.check_in_status == CheckInStatus.NOT_CHECKED_IN
        assert undone.checked_in_at is None

    @pytest.mark.asyncio
    async def test_seed_must_be_positive(self, db, scenario):
        tournament_id = await scenario.tournament()
        row = await _register(db, tournament_id, ParticipantRef.user("alice"))

        async with db.unit_of_work() as uow:
            seeded = await ParticipantRegistry(uow).assign_seed(row.id, 3)
        assert seeded.seed == 3

        with pytest.raises(ValidationError):
            async with db.unit_of_work() as uow:
                await ParticipantRegistry(uow).assign_seed(row.id, 0)

    @pytest.mark.asyncio
    async def test_list_in_registration_order(self, db, scenario):
        tournament_id = await scenario.tournament()
        await scenario.register(tournament_id, "alice", "bob", "carol")

        async with db.unit_of_work() as uow:
            rows = await ParticipantRegistry(uow).list_participants(tournament_id)

        assert [r.participant_id for r in rows] == ["alice", "bob", "carol"]
