"""TournamentSettlement: decisions, cancellation refunds and prize payouts."""

import pytest

from conftest import ADMIN, MANAGER, ORGANIZER, player
from tourney.errors import (
    AlreadyTerminalError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
)
from tourney.models.match import MatchStatus
from tourney.models.tournament import TournamentStatus
from tourney.services.match import MatchService
from tourney.services.registry import ParticipantRegistry
from tourney.services.settlement import (
    TournamentDecision,
    TournamentSettlement,
    cancel_refund_key,
)
from tourney.services.wallet import WalletLedger
from tourney.tournament.events import DomainEventType
from tourney.tournament.refs import Caller, ParticipantRef

FEE = 500
PLAYERS = ["alice", "bob", "carol", "dave"]
ORGANIZER_CALLER = Caller(ORGANIZER)


async def _paid_tournament(scenario, players=PLAYERS, **overrides):
    for user_id in players:
        await scenario.wallet(user_id, 1000)
    tournament_id = await scenario.tournament(entry_fee=FEE, **overrides)
    await scenario.register(tournament_id, *players)
    return tournament_id


async def _entry_fee_tx(db, tournament_id, participant_id):
    async with db.unit_of_work() as uow:
        row = await ParticipantRegistry(uow).find(tournament_id, participant_id)
        return row.entry_fee_transaction_id


# =============================================================================
# Cancellation
# =============================================================================


class TestCancelAndRefund:
    @pytest.mark.asyncio
    async def test_refunds_every_paid_entry(self, db, scenario, published):
        tournament_id = await _paid_tournament(scenario)
        await scenario.transition(tournament_id, "start")
        semi1, semi2, final = await scenario.bracket(tournament_id, PLAYERS)
        await scenario.play(semi1, "alice", "bob")

        summary = await TournamentSettlement(db).cancel_and_refund(
            tournament_id, ORGANIZER_CALLER, reason="Server outage"
        )

        assert summary.complete
        assert not summary.resumed
        assert summary.refunds_issued == 4
        assert summary.total_refunded == 4 * FEE
        assert summary.matches_canceled == 2
        for user_id in PLAYERS:
            assert await scenario.balance(user_id) == 1000

        tournament = await scenario.get_tournament(tournament_id)
        assert tournament.status == TournamentStatus.CANCELED
        assert tournament.cancel_reason == "Server outage"
        assert (await scenario.match(semi1)).status == MatchStatus.COMPLETED
        assert (await scenario.match(semi2)).status == MatchStatus.CANCELED

        types = [e.event_type for e in published]
        assert DomainEventType.TOURNAMENT_CANCELED in types
        assert types.count(DomainEventType.REFUND_ISSUED) == 4

    @pytest.mark.asyncio
    async def test_refund_recorded_on_participant(self, db, scenario):
        tournament_id = await _paid_tournament(scenario, ["alice", "bob"])

        summary = await TournamentSettlement(db).cancel_and_refund(tournament_id, MANAGER)

        async with db.unit_of_work() as uow:
            rows = await ParticipantRegistry(uow).list_participants(tournament_id)
            keys = [
                (await WalletLedger(uow.session).get_transaction(r.refund_transaction_id)).idempotency_key
                for r in rows
            ]
        assert keys == [cancel_refund_key(tournament_id, "alice"), cancel_refund_key(tournament_id, "bob")]
        assert {r.transaction_id for r in summary.refunds} == {r.refund_transaction_id for r in rows}

    @pytest.mark.asyncio
    async def test_rerun_issues_only_missing_refunds(self, db, scenario, monkeypatch):
        tournament_id = await _paid_tournament(scenario, ["alice", "bob", "carol"])
        failing_tx = await _entry_fee_tx(db, tournament_id, "bob")
        real_refund = WalletLedger.refund

        async def flaky_refund(self, original_transaction_id, idempotency_key, memo=None):
            if original_transaction_id == failing_tx:
                raise RuntimeError("ledger connection lost")
            return await real_refund(self, original_transaction_id, idempotency_key, memo=memo)

        monkeypatch.setattr(WalletLedger, "refund", flaky_refund)
        settlement = TournamentSettlement(db)

        first = await settlement.cancel_and_refund(tournament_id, ORGANIZER_CALLER)

        assert not first.complete
        assert (first.refunds_issued, first.refunds_failed) == (2, 1)
        assert await scenario.balance("bob") == 1000 - FEE
        assert (await scenario.get_tournament(tournament_id)).status == TournamentStatus.CANCELED

        monkeypatch.undo()
        second = await settlement.cancel_and_refund(tournament_id, ORGANIZER_CALLER)

        assert second.resumed
        assert second.complete
        assert (second.refunds_issued, second.refunds_skipped) == (1, 2)
        assert second.matches_canceled == 0
        for user_id in ("alice", "bob", "carol"):
            assert await scenario.balance(user_id) == 1000

    @pytest.mark.asyncio
    async def test_rerun_after_full_success_changes_nothing(self, db, scenario, published):
        tournament_id = await _paid_tournament(scenario, ["alice", "bob"])
        settlement = TournamentSettlement(db)
        await settlement.cancel_and_refund(tournament_id, ORGANIZER_CALLER)
        published.clear()

        again = await settlement.cancel_and_refund(tournament_id, ORGANIZER_CALLER)

        assert again.refunds_skipped == 2
        assert again.total_refunded == 0
        assert published == []
        assert await scenario.balance("alice") == 1000

    @pytest.mark.asyncio
    async def test_completed_tournament_cannot_be_canceled(self, db, scenario):
        tournament_id = await scenario.tournament()
        await scenario.register(tournament_id, "alice", "bob")
        await scenario.transition(tournament_id, "start")
        await scenario.transition(tournament_id, "complete")

        with pytest.raises(AlreadyTerminalError):
            await TournamentSettlement(db).cancel_and_refund(tournament_id, ADMIN)

    @pytest.mark.asyncio
    async def test_withdrawn_player_not_refunded_twice(self, db, scenario):
        tournament_id = await _paid_tournament(scenario, ["alice", "bob"])
        async with db.unit_of_work() as uow:
            await ParticipantRegistry(uow).withdraw(tournament_id, "bob")

        summary = await TournamentSettlement(db).cancel_and_refund(tournament_id, ORGANIZER_CALLER)

        assert [r.participant_id for r in summary.refunds] == ["alice"]
        assert await scenario.balance("bob") == 1000


# =============================================================================
# Completion and prizes
# =============================================================================


async def _played_out(scenario, **overrides):
    """Four-player tournament, started and played to the end: dave beats alice in the final."""
    tournament_id = await scenario.tournament(**overrides)
    for user_id in PLAYERS:
        await scenario.wallet(user_id)
    await scenario.register(tournament_id, *PLAYERS)
    await scenario.transition(tournament_id, "start")
    semi1, semi2, final = await scenario.bracket(tournament_id, PLAYERS)
    await scenario.play(semi1, "alice", "bob")
    await scenario.play(semi2, "dave", "carol")
    await scenario.play(final, "dave", "alice")
    return tournament_id


class TestCompleteAndPayout:
    @pytest.mark.asyncio
    async def test_pays_by_final_ranking(self, db, scenario, published):
        tournament_id = await _played_out(
            scenario, prize_pool=1000, settings={"payout_structure": [0.7, 0.3]}
        )

        summary = await TournamentSettlement(db).complete_and_payout(tournament_id, ORGANIZER_CALLER)

        assert [(p.rank, p.participant_id, p.prize_amount) for p in summary.payouts] == [
            (1, "dave", 700),
            (2, "alice", 300),
        ]
        assert summary.total_paid == 1000
        assert summary.failed_payouts == 0
        assert await scenario.balance("dave") == 700
        assert await scenario.balance("alice") == 300
        assert (await scenario.get_tournament(tournament_id)).status == TournamentStatus.COMPLETED
        completed = [e for e in published if e.event_type == DomainEventType.TOURNAMENT_COMPLETED]
        assert completed[0].data["ranking"] == ["dave", "alice"]

    @pytest.mark.asyncio
    async def test_default_structure_pays_winner(self, db, scenario):
        tournament_id = await _played_out(scenario, prize_pool=800)

        summary = await TournamentSettlement(db).complete_and_payout(tournament_id, ORGANIZER_CALLER)

        assert [p.participant_id for p in summary.payouts] == ["dave"]
        assert await scenario.balance("dave") == 800
        assert await scenario.balance("alice") == 0

    @pytest.mark.asyncio
    async def test_rerun_does_not_pay_twice(self, db, scenario, published):
        tournament_id = await _played_out(
            scenario, prize_pool=1000, settings={"payout_structure": [0.7, 0.3]}
        )
        settlement = TournamentSettlement(db)
        await settlement.complete_and_payout(tournament_id, ORGANIZER_CALLER)
        published.clear()

        again = await settlement.complete_and_payout(tournament_id, ORGANIZER_CALLER)

        assert all(p.skipped for p in again.payouts)
        assert again.total_paid == 0
        assert await scenario.balance("dave") == 700
        assert published == []

    @pytest.mark.asyncio
    async def test_team_prize_paid_to_its_payer(self, db, scenario):
        for user_id in ("captain-red", "captain-blue"):
            await scenario.wallet(user_id)
        tournament_id = await scenario.tournament(prize_pool=600)
        async with db.unit_of_work() as uow:
            registry = ParticipantRegistry(uow)
            await registry.register(tournament_id, ParticipantRef.team("red"), payer_user_id="captain-red")
            await registry.register(tournament_id, ParticipantRef.team("blue"), payer_user_id="captain-blue")
        await scenario.transition(tournament_id, "start")
        async with db.unit_of_work() as uow:
            matches = MatchService(uow)
            final = await matches.add_match(
                tournament_id, 1, 1,
                participant1=ParticipantRef.team("red"),
                participant2=ParticipantRef.team("blue"),
            )
            await matches.schedule(final.id)
        red, blue = player("captain-red", "red"), player("captain-blue", "blue")
        async with db.unit_of_work() as uow:
            matches = MatchService(uow)
            await matches.start_match(final.id, red)
            await matches.submit_result(final.id, red, "red", 2, 0)
        async with db.unit_of_work() as uow:
            await MatchService(uow).confirm_result(final.id, blue)

        summary = await TournamentSettlement(db).complete_and_payout(tournament_id, ORGANIZER_CALLER)

        assert [(p.participant_id, p.user_id, p.prize_amount) for p in summary.payouts] == [
            ("red", "captain-red", 600),
        ]
        assert summary.failed_payouts == 0
        assert await scenario.balance("captain-red") == 600

    @pytest.mark.asyncio
    async def test_prize_needs_final_result(self, db, scenario):
        tournament_id = await scenario.tournament(prize_pool=1000)
        await scenario.register(tournament_id, *PLAYERS)
        await scenario.transition(tournament_id, "start")
        await scenario.bracket(tournament_id, PLAYERS)

        with pytest.raises(ConflictError):
            await TournamentSettlement(db).complete_and_payout(tournament_id, ORGANIZER_CALLER)

        assert (await scenario.get_tournament(tournament_id)).status == TournamentStatus.ONGOING

    @pytest.mark.asyncio
    async def test_only_ongoing_can_complete(self, db, scenario):
        tournament_id = await scenario.tournament()

        with pytest.raises(InvalidTransitionError):
            await TournamentSettlement(db).complete_and_payout(tournament_id, ORGANIZER_CALLER)


# =============================================================================
# Rounds and decisions
# =============================================================================


class TestAdvanceRound:
    @pytest.mark.asyncio
    async def test_round_must_be_finished(self, db, scenario, published):
        tournament_id = await scenario.tournament()
        await scenario.register(tournament_id, *PLAYERS)
        await scenario.transition(tournament_id, "start")
        semi1, semi2, final = await scenario.bracket(tournament_id, PLAYERS)
        await scenario.play(semi1, "alice", "bob")
        settlement = TournamentSettlement(db)

        with pytest.raises(ConflictError) as exc_info:
            await settlement.advance_round(tournament_id, MANAGER)
        assert exc_info.value.details["matchIds"] == [semi2]

        await scenario.play(semi2, "carol", "dave")
        assert await settlement.advance_round(tournament_id, MANAGER) == 2

        assert (await scenario.get_tournament(tournament_id)).current_round == 2
        assert (await scenario.match(final)).status == MatchStatus.SCHEDULED
        advanced = [e for e in published if e.event_type == DomainEventType.ROUND_ADVANCED]
        assert advanced[0].data["round"] == 2

    @pytest.mark.asyncio
    async def test_no_round_after_final(self, db, scenario):
        tournament_id = await _played_out(scenario)
        settlement = TournamentSettlement(db)
        await settlement.advance_round(tournament_id, MANAGER)

        with pytest.raises(ConflictError):
            await settlement.advance_round(tournament_id, MANAGER)

    @pytest.mark.asyncio
    async def test_requires_ongoing(self, db, scenario):
        tournament_id = await scenario.tournament()

        with pytest.raises(InvalidTransitionError):
            await TournamentSettlement(db).advance_round(tournament_id, MANAGER)


class TestDecide:
    @pytest.mark.asyncio
    async def test_player_cannot_decide(self, db, scenario):
        tournament_id = await scenario.tournament()

        with pytest.raises(ForbiddenError):
            await TournamentSettlement(db).decide(tournament_id, player("alice"), TournamentDecision.CANCEL)

        assert (await scenario.get_tournament(tournament_id)).status == TournamentStatus.REGISTRATION_OPEN

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "caller",
        [ORGANIZER_CALLER, Caller("co-host"), MANAGER, ADMIN],
        ids=["organizer", "managed_by", "manager_role", "admin"],
    )
    async def test_managers_can_decide(self, db, scenario, caller):
        tournament_id = await scenario.tournament(managed_by=["co-host"])
        await scenario.register(tournament_id, "alice", "bob")

        result = await TournamentSettlement(db).decide(tournament_id, caller, TournamentDecision.START)

        assert result.status == TournamentStatus.ONGOING
        assert result.current_round == 1

    @pytest.mark.asyncio
    async def test_cancel_decision_carries_summary(self, db, scenario):
        tournament_id = await _paid_tournament(scenario, ["alice", "bob"])

        result = await TournamentSettlement(db).decide(
            tournament_id, ORGANIZER_CALLER, "CANCEL", reason="Rain"
        )

        assert result.decision == TournamentDecision.CANCEL
        assert result.status == TournamentStatus.CANCELED
        assert result.cancellation.refunds_issued == 2

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, db, scenario):
        tournament_id = await scenario.tournament()
        settlement = TournamentSettlement(db)
        await settlement.decide(tournament_id, ADMIN, TournamentDecision.START)

        with pytest.raises(InvalidTransitionError):
            await settlement.decide(tournament_id, ADMIN, TournamentDecision.START)
