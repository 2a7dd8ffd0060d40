"""Tournament decisions and money settlement.

Tournament-level decisions (start, cancel, complete, advance round) go
through ``TournamentSettlement.decide``, which checks the caller may manage
the tournament and dispatches.

Cancellation and completion move money for many participants. The status
change commits first; every refund or prize payout then runs in its own
unit of work with a deterministic idempotency key. A crash halfway leaves
the tournament CANCELED/COMPLETED with some payments done, and running the
same decision again pays out only what is still missing.

Usage:
    settlement = TournamentSettlement(db)
    summary = await settlement.cancel_and_refund(tournament_id, caller, reason="Venue closed")
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4

from sqlalchemy import select

from tourney.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    TourneyError,
)
from tourney.logging_config import log_context
from tourney.models.base import utcnow
from tourney.models.match import Match, MatchStatus
from tourney.models.tournament import Tournament, TournamentParticipant, TournamentStatus
from tourney.models.wallet import TransactionType
from tourney.services.match import DEFAULT_DISPUTE_WINDOW, MatchService
from tourney.services.tournament import TournamentService
from tourney.services.wallet import WalletLedger
from tourney.tournament.events import DomainEvent, DomainEventType
from tourney.tournament.refs import Caller, ParticipantRef, Role
from tourney.utils.db import Database, UnitOfWork

logger = logging.getLogger(__name__)

DEFAULT_PAYOUT_STRUCTURE = [1.0]
ROUND_FINISHED_STATUSES = (MatchStatus.COMPLETED, MatchStatus.CANCELED)


class TournamentDecision(str, Enum):
    START = "START"
    CANCEL = "CANCEL"
    COMPLETE = "COMPLETE"
    ADVANCE_ROUND = "ADVANCE_ROUND"


def cancel_refund_key(tournament_id: str, participant_id: str) -> str:
    return f"cancel-refund:{tournament_id}:{participant_id}"


def prize_key(tournament_id: str, rank: int) -> str:
    return f"prize:{tournament_id}:{rank}"


@dataclass
class RefundResult:
    """Outcome of one participant refund."""

    participant_id: str = ""
    original_transaction_id: str | None = None
    amount: int = 0
    transaction_id: str | None = None
    success: bool = True
    skipped: bool = False
    error_message: str | None = None

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "original_transaction_id": self.original_transaction_id,
            "amount": self.amount,
            "transaction_id": self.transaction_id,
            "success": self.success,
            "skipped": self.skipped,
            "error_message": self.error_message,
        }


@dataclass
class CancellationSummary:
    tournament_id: str = ""
    resumed: bool = False
    matches_canceled: int = 0
    refunds_issued: int = 0
    refunds_skipped: int = 0
    refunds_failed: int = 0
    total_refunded: int = 0
    refunds: list[RefundResult] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.refunds_failed == 0

    def to_dict(self) -> dict:
        return {
            "tournament_id": self.tournament_id,
            "resumed": self.resumed,
            "matches_canceled": self.matches_canceled,
            "refunds_issued": self.refunds_issued,
            "refunds_skipped": self.refunds_skipped,
            "refunds_failed": self.refunds_failed,
            "total_refunded": self.total_refunded,
            "refunds": [r.to_dict() for r in self.refunds],
        }


@dataclass
class PayoutResult:
    """Outcome of one prize payout."""

    payout_id: str = field(default_factory=lambda: str(uuid4()))
    participant_id: str = ""
    user_id: str | None = None
    rank: int = 0
    prize_amount: int = 0
    prize_percentage: float = 0.0
    transaction_id: str | None = None
    success: bool = True
    skipped: bool = False
    error_message: str | None = None
    paid_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "payout_id": self.payout_id,
            "participant_id": self.participant_id,
            "user_id": self.user_id,
            "rank": self.rank,
            "prize_amount": self.prize_amount,
            "prize_percentage": self.prize_percentage,
            "transaction_id": self.transaction_id,
            "success": self.success,
            "skipped": self.skipped,
            "error_message": self.error_message,
            "paid_at": self.paid_at.isoformat(),
        }


@dataclass
class SettlementSummary:
    settlement_id: str = field(default_factory=lambda: str(uuid4()))
    tournament_id: str = ""
    tournament_name: str = ""
    total_prize_pool: int = 0
    total_paid: int = 0
    successful_payouts: int = 0
    failed_payouts: int = 0
    payouts: list[PayoutResult] = field(default_factory=list)
    settled_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "settlement_id": self.settlement_id,
            "tournament_id": self.tournament_id,
            "tournament_name": self.tournament_name,
            "total_prize_pool": self.total_prize_pool,
            "total_paid": self.total_paid,
            "successful_payouts": self.successful_payouts,
            "failed_payouts": self.failed_payouts,
            "payouts": [p.to_dict() for p in self.payouts],
            "settled_at": self.settled_at.isoformat(),
        }


@dataclass
class DecisionResult:
    decision: TournamentDecision
    tournament_id: str
    status: TournamentStatus
    current_round: int = 0
    cancellation: CancellationSummary | None = None
    settlement: SettlementSummary | None = None


@dataclass
class _PaidEntry:
    row_id: str
    participant_id: str
    entry_fee_transaction_id: str


class TournamentSettlement:
    """Decision dispatcher plus refund and prize settlement."""

    def __init__(self, db: Database, *, dispute_window: timedelta = DEFAULT_DISPUTE_WINDOW):
        self.db = db
        self.dispute_window = dispute_window

    # =========================================================================
    # Decisions
    # =========================================================================

    async def decide(
        self,
        tournament_id: str,
        caller: Caller,
        decision: TournamentDecision,
        *,
        reason: str | None = None,
    ) -> DecisionResult:
        """Apply a manager decision to a tournament.

        Raises:
            ForbiddenError: caller may not manage this tournament
            InvalidTransitionError / AlreadyTerminalError: decision not allowed now
        """
        decision = TournamentDecision(decision)
        with log_context(tournament_id=tournament_id, decision=decision.value, user_id=caller.user_id):
            logger.info(f"Decision {decision.value} on tournament {tournament_id} by {caller.user_id}")

            if decision == TournamentDecision.CANCEL:
                cancellation = await self.cancel_and_refund(tournament_id, caller, reason=reason)
                return await self._result(decision, tournament_id, cancellation=cancellation)
            if decision == TournamentDecision.COMPLETE:
                settlement = await self.complete_and_payout(tournament_id, caller)
                return await self._result(decision, tournament_id, settlement=settlement)
            if decision == TournamentDecision.ADVANCE_ROUND:
                await self.advance_round(tournament_id, caller)
                return await self._result(decision, tournament_id)

            async with self.db.unit_of_work() as uow:
                tournaments = TournamentService(uow)
                self._authorize(await tournaments.get(tournament_id, lock=True), caller)
                await tournaments.start(tournament_id)
            return await self._result(decision, tournament_id)

    async def cancel_and_refund(
        self,
        tournament_id: str,
        caller: Caller,
        *,
        reason: str | None = None,
    ) -> CancellationSummary:
        """Cancel a tournament and refund every paid entry fee.

        Safe to re-run on a CANCELED tournament: refunds already made are
        skipped, missing ones are issued.
        """
        summary = CancellationSummary(tournament_id=tournament_id)

        async with self.db.unit_of_work() as uow:
            tournaments = TournamentService(uow)
            tournament = await tournaments.get(tournament_id, lock=True)
            self._authorize(tournament, caller)

            if tournament.status == TournamentStatus.CANCELED:
                summary.resumed = True
            else:
                await tournaments.cancel(tournament.id, reason)
                matches = MatchService(uow, dispute_window=self.dispute_window)
                summary.matches_canceled = await matches.cancel_open_matches(
                    tournament.id, reason or "Tournament canceled"
                )
                uow.emit(DomainEvent(
                    event_type=DomainEventType.TOURNAMENT_CANCELED,
                    tournament_id=tournament.id,
                    user_id=caller.user_id,
                    data={"reason": reason, "matches_canceled": summary.matches_canceled},
                ))
            entries = await self._paid_entries(uow, tournament.id)
            tournament_name = tournament.name

        for entry in entries:
            result = await self._refund_entry(tournament_id, tournament_name, entry)
            summary.refunds.append(result)
            if not result.success:
                summary.refunds_failed += 1
            elif result.skipped:
                summary.refunds_skipped += 1
            else:
                summary.refunds_issued += 1
                summary.total_refunded += result.amount

        logger.info(
            f"Tournament {tournament_id} canceled: issued={summary.refunds_issued} "
            f"skipped={summary.refunds_skipped} failed={summary.refunds_failed} "
            f"total={summary.total_refunded:,}"
        )
        return summary

    async def complete_and_payout(self, tournament_id: str, caller: Caller) -> SettlementSummary:
        """Complete an ONGOING tournament and pay prizes from the prize pool.

        Ranking comes from the final match: its winner is rank 1, the loser
        rank 2. ``settings["payout_structure"]`` gives the share per rank.
        """
        async with self.db.unit_of_work() as uow:
            tournaments = TournamentService(uow)
            tournament = await tournaments.get(tournament_id, lock=True)
            self._authorize(tournament, caller)

            resumed = tournament.status == TournamentStatus.COMPLETED
            if not resumed:
                await tournaments.complete(tournament.id)

            ranking = await self._final_ranking(uow, tournament.id)
            if tournament.prize_pool > 0 and not ranking:
                raise ConflictError(
                    "The final match has no confirmed result yet",
                    details={"tournamentId": tournament.id},
                )
            if not resumed:
                uow.emit(DomainEvent(
                    event_type=DomainEventType.TOURNAMENT_COMPLETED,
                    tournament_id=tournament.id,
                    user_id=caller.user_id,
                    data={"ranking": [p.id for p in ranking]},
                ))
            payers = await self._payers(uow, tournament.id)

            summary = SettlementSummary(
                tournament_id=tournament.id,
                tournament_name=tournament.name,
                total_prize_pool=tournament.prize_pool,
            )
            structure = (tournament.settings or {}).get("payout_structure", DEFAULT_PAYOUT_STRUCTURE)
            planned = [
                (rank, participant, structure[rank - 1])
                for rank, participant in enumerate(ranking, 1)
                if rank <= len(structure)
            ]

        for rank, participant, percentage in planned:
            amount = int(summary.total_prize_pool * percentage)
            result = PayoutResult(
                participant_id=participant.id,
                user_id=payers.get(participant.id),
                rank=rank,
                prize_amount=amount,
                prize_percentage=percentage * 100,
            )
            if amount > 0:
                await self._pay_prize(summary, result)
            summary.payouts.append(result)

        logger.info(
            f"Tournament settlement complete: {tournament_id} "
            f"total_paid={summary.total_paid:,} "
            f"successful={summary.successful_payouts} "
            f"failed={summary.failed_payouts}"
        )
        return summary

    async def advance_round(self, tournament_id: str, caller: Caller) -> int:
        """Close the current round and schedule the next one."""
        async with self.db.unit_of_work() as uow:
            tournaments = TournamentService(uow)
            tournament = await tournaments.get(tournament_id, lock=True)
            self._authorize(tournament, caller)
            if tournament.status != TournamentStatus.ONGOING:
                raise InvalidTransitionError(
                    entity="Tournament",
                    from_state=tournament.status.value,
                    event="advance_round",
                )

            matches = MatchService(uow, dispute_window=self.dispute_window)
            current = await matches.list_matches(tournament.id, tournament.current_round)
            unfinished = [m.id for m in current if m.status not in ROUND_FINISHED_STATUSES]
            if unfinished:
                raise ConflictError(
                    f"Round {tournament.current_round} still has unfinished matches",
                    details={"matchIds": unfinished},
                )

            next_round = tournament.current_round + 1
            upcoming = await matches.list_matches(tournament.id, next_round)
            if not upcoming:
                raise ConflictError(
                    "No further rounds; complete the tournament instead",
                    details={"round": tournament.current_round},
                )
            for match in upcoming:
                if match.status == MatchStatus.PENDING and len(match.participants()) == 2:
                    await matches.schedule(match.id)

            tournament.current_round = next_round
            await uow.session.flush()
            uow.emit(DomainEvent(
                event_type=DomainEventType.ROUND_ADVANCED,
                tournament_id=tournament.id,
                user_id=caller.user_id,
                data={"round": next_round},
            ))

        logger.info(f"Tournament {tournament_id} advanced to round {next_round}")
        return next_round

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _authorize(tournament: Tournament, caller: Caller) -> None:
        if caller.has_role(Role.TOURNAMENT_MANAGER, Role.ADMIN):
            return
        if tournament.is_managed_by(caller.user_id):
            return
        raise ForbiddenError(
            "Caller may not manage this tournament",
            details={"tournamentId": tournament.id, "userId": caller.user_id},
        )

    async def _result(self, decision: TournamentDecision, tournament_id: str, **kwargs) -> DecisionResult:
        async with self.db.unit_of_work() as uow:
            tournament = await TournamentService(uow).get(tournament_id)
            return DecisionResult(
                decision=decision,
                tournament_id=tournament.id,
                status=tournament.status,
                current_round=tournament.current_round,
                **kwargs,
            )

    @staticmethod
    async def _paid_entries(uow: UnitOfWork, tournament_id: str) -> list[_PaidEntry]:
        result = await uow.session.execute(
            select(TournamentParticipant)
            .where(
                TournamentParticipant.tournament_id == tournament_id,
                TournamentParticipant.entry_fee_transaction_id.is_not(None),
            )
            .order_by(TournamentParticipant.registered_at, TournamentParticipant.id)
        )
        return [
            _PaidEntry(row.id, row.participant_id, row.entry_fee_transaction_id)
            for row in result.scalars().all()
        ]

    @staticmethod
    async def _payers(uow: UnitOfWork, tournament_id: str) -> dict[str, str | None]:
        result = await uow.session.execute(
            select(TournamentParticipant.participant_id, TournamentParticipant.payer_user_id)
            .where(TournamentParticipant.tournament_id == tournament_id)
        )
        return {participant_id: payer for participant_id, payer in result.all()}

    @staticmethod
    async def _final_ranking(uow: UnitOfWork, tournament_id: str) -> list[ParticipantRef]:
        final = await uow.session.scalar(
            select(Match)
            .where(
                Match.tournament_id == tournament_id,
                Match.next_match_id.is_(None),
            )
            .order_by(Match.round_number.desc(), Match.match_number_in_round)
            .limit(1)
        )
        if final is None or final.status != MatchStatus.COMPLETED or final.winner is None:
            return []
        ranking = [final.winner]
        if final.loser is not None:
            ranking.append(final.loser)
        return ranking

    async def _refund_entry(
        self,
        tournament_id: str,
        tournament_name: str,
        entry: _PaidEntry,
    ) -> RefundResult:
        result = RefundResult(
            participant_id=entry.participant_id,
            original_transaction_id=entry.entry_fee_transaction_id,
        )
        key = cancel_refund_key(tournament_id, entry.participant_id)
        try:
            async with self.db.unit_of_work() as uow:
                ledger = WalletLedger(uow.session)
                row = await uow.session.get(
                    TournamentParticipant, entry.row_id, with_for_update=True
                )
                prior = await ledger.find_by_idempotency_key(key)
                if prior is not None:
                    result.skipped = True
                    result.transaction_id = prior.id
                    result.amount = prior.amount
                    if row is not None and row.refund_transaction_id is None:
                        row.refund_transaction_id = prior.id
                    return result

                tx = await ledger.refund(
                    entry.entry_fee_transaction_id,
                    key,
                    memo=f"Refund: tournament {tournament_name} canceled",
                )
                if row is not None:
                    row.refund_transaction_id = tx.id
                await uow.session.flush()

                result.transaction_id = tx.id
                result.amount = tx.amount
                uow.emit(DomainEvent(
                    event_type=DomainEventType.REFUND_ISSUED,
                    tournament_id=tournament_id,
                    data={
                        "participant_id": entry.participant_id,
                        "transaction_id": tx.id,
                        "amount": tx.amount,
                    },
                ))
        except TourneyError as e:
            result.success = False
            result.error_message = e.message
            logger.error(
                f"Refund failed for {entry.participant_id} in tournament {tournament_id}: "
                f"{e.code} {e.message}"
            )
        except Exception as e:
            result.success = False
            result.error_message = f"Unexpected error: {e}"
            logger.exception(
                f"Unexpected error refunding {entry.participant_id} in tournament {tournament_id}"
            )
        return result

    async def _pay_prize(self, summary: SettlementSummary, result: PayoutResult) -> None:
        key = prize_key(summary.tournament_id, result.rank)
        try:
            if result.user_id is None:
                raise ConflictError(
                    "No paying user recorded for prize winner",
                    details={"participantId": result.participant_id},
                )
            async with self.db.unit_of_work() as uow:
                ledger = WalletLedger(uow.session)
                prior = await ledger.find_by_idempotency_key(key)
                if prior is not None:
                    result.skipped = True
                    result.transaction_id = prior.id
                    return

                wallet = await ledger.get_wallet_for_user(result.user_id)
                tx = await ledger.credit(
                    wallet.id,
                    result.prize_amount,
                    key,
                    memo=(
                        f"Tournament prize: {summary.tournament_name} - Rank #{result.rank} "
                        f"({result.prize_percentage:.1f}%)"
                    ),
                    tx_type=TransactionType.PRIZE_PAYOUT,
                    tournament_id=summary.tournament_id,
                )
                result.transaction_id = tx.id
                uow.emit(DomainEvent(
                    event_type=DomainEventType.PRIZE_PAID,
                    tournament_id=summary.tournament_id,
                    user_id=result.user_id,
                    data={"rank": result.rank, "amount": tx.amount, "transaction_id": tx.id},
                ))

            summary.successful_payouts += 1
            summary.total_paid += result.prize_amount
            logger.info(
                f"Tournament prize paid: {result.user_id} rank={result.rank} "
                f"amount={result.prize_amount:,}"
            )
        except TourneyError as e:
            result.success = False
            result.error_message = e.message
            summary.failed_payouts += 1
            logger.error(
                f"Failed to pay tournament prize: {result.user_id} "
                f"amount={result.prize_amount} error={e.message}"
            )
        except Exception as e:
            result.success = False
            result.error_message = f"Unexpected error: {e}"
            summary.failed_payouts += 1
            logger.exception(
                f"Unexpected error paying prize: {result.user_id} amount={result.prize_amount}"
            )
