"""Participant registry: registration, withdrawal, check-in and seeding.

Registration runs in one transaction under the tournament row lock:
capacity check, entry-fee debit, participant insert, counter increment. Any
failure rolls the whole thing back, including the debit.
"""

import logging

from sqlalchemy import select

from tourney.errors import (
    AlreadyRegisteredError,
    AlreadyTerminalError,
    DuplicateOperationError,
    NotFoundError,
    RegistrationClosedError,
    TournamentFullError,
    ValidationError,
)
from tourney.models.base import utcnow
from tourney.models.tournament import Tournament, TournamentParticipant, TournamentStatus
from tourney.models.wallet import TransactionType
from tourney.services.tournament import TournamentService
from tourney.services.wallet import WalletLedger
from tourney.tournament.events import DomainEvent, DomainEventType
from tourney.tournament.refs import ParticipantRef
from tourney.utils.db import UnitOfWork

logger = logging.getLogger(__name__)


def entry_fee_key_prefix(tournament_id: str, participant_id: str) -> str:
    return f"entry-fee:{tournament_id}:{participant_id}:"


def withdraw_refund_key(entry_fee_transaction_id: str) -> str:
    return f"withdraw-refund:{entry_fee_transaction_id}"


class ParticipantRegistry:
    """Manages the participant rows of tournaments."""

    def __init__(self, uow: UnitOfWork) -> None:
        self.uow = uow
        self.session = uow.session
        self.tournaments = TournamentService(uow)
        self.ledger = WalletLedger(uow.session)

    async def get(self, participant_row_id: str) -> TournamentParticipant:
        row = await self.session.get(TournamentParticipant, participant_row_id)
        if row is None:
            raise NotFoundError("TournamentParticipant", participant_row_id)
        return row

    async def find(self, tournament_id: str, participant_id: str) -> TournamentParticipant | None:
        return await self.session.scalar(
            select(TournamentParticipant).where(
                TournamentParticipant.tournament_id == tournament_id,
                TournamentParticipant.participant_id == participant_id,
            )
        )

    async def list_participants(self, tournament_id: str) -> list[TournamentParticipant]:
        result = await self.session.execute(
            select(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament_id)
            .order_by(TournamentParticipant.registered_at, TournamentParticipant.id)
        )
        return list(result.scalars().all())

    async def register(
        self,
        tournament_id: str,
        participant: ParticipantRef,
        *,
        payer_user_id: str | None = None,
    ) -> TournamentParticipant:
        """Register a user or team, charging the entry fee if there is one.

        Teams must name the user whose wallet pays fees and receives prizes
        (``payer_user_id``), even when the tournament is free.

        Raises:
            RegistrationClosedError: tournament not in REGISTRATION_OPEN
            TournamentFullError: no capacity left
            AlreadyRegisteredError: participant already has a row
            InsufficientFundsError: payer cannot cover the fee
            ValidationError: a team registration without a paying user
        """
        tournament = await self.tournaments.get(tournament_id, lock=True)
        if not tournament.can_register():
            if tournament.status != TournamentStatus.REGISTRATION_OPEN:
                raise RegistrationClosedError(tournament.id, tournament.status.value)
            raise TournamentFullError(tournament.id, tournament.max_participants)

        if await self.find(tournament.id, participant.id) is not None:
            raise AlreadyRegisteredError(tournament.id, participant.id)

        payer = payer_user_id or (participant.id if participant.is_user else None)
        if payer is None:
            # Fees are charged to, and prizes paid into, this user's wallet
            raise ValidationError(
                "Team registrations need a paying user",
                details={"participantId": participant.id},
            )
        fee_tx_id = None
        if tournament.entry_fee > 0:
            fee_tx_id = await self._charge_entry_fee(tournament, participant, payer)

        row = TournamentParticipant(
            tournament_id=tournament.id,
            participant_id=participant.id,
            participant_type=participant.kind,
            payer_user_id=payer,
            registered_at=utcnow(),
            entry_fee_transaction_id=fee_tx_id,
        )
        self.session.add(row)
        await self.session.flush()
        await self.tournaments.increment_participant_count(tournament)

        logger.info(
            f"Registered {participant.kind.value}:{participant.id} for tournament {tournament.id} "
            f"({tournament.current_participants}/{tournament.max_participants})"
        )
        self.uow.emit(DomainEvent(
            event_type=DomainEventType.PARTICIPANT_REGISTERED,
            tournament_id=tournament.id,
            user_id=payer,
            data={
                "participant_id": participant.id,
                "participant_type": participant.kind.value,
                "entry_fee_transaction_id": fee_tx_id,
            },
        ))
        return row

    async def withdraw(self, tournament_id: str, participant_id: str) -> TournamentParticipant:
        """Remove a registration; refund the fee if play has not started."""
        tournament = await self.tournaments.get(tournament_id, lock=True)
        if tournament.is_terminal:
            raise AlreadyTerminalError(
                f"Tournament is already {tournament.status.value}",
                entity="Tournament",
                from_state=tournament.status.value,
                event="withdraw",
            )

        row = await self.find(tournament.id, participant_id)
        if row is None:
            raise NotFoundError("TournamentParticipant", participant_id)

        refund_tx_id = None
        if row.entry_fee_transaction_id and not tournament.has_started:
            refund = await self.ledger.refund(
                row.entry_fee_transaction_id,
                withdraw_refund_key(row.entry_fee_transaction_id),
                memo=f"Withdrawal from tournament {tournament.name}",
            )
            refund_tx_id = refund.id

        await self.session.delete(row)
        await self.session.flush()
        await self.tournaments.decrement_participant_count(tournament)

        logger.info(
            f"Withdrew {participant_id} from tournament {tournament.id} "
            f"(refund={refund_tx_id or 'none'})"
        )
        self.uow.emit(DomainEvent(
            event_type=DomainEventType.PARTICIPANT_WITHDRAWN,
            tournament_id=tournament.id,
            user_id=row.payer_user_id,
            data={"participant_id": participant_id, "refund_transaction_id": refund_tx_id},
        ))
        return row

    async def check_in(self, participant_row_id: str) -> TournamentParticipant:
        row = await self.get(participant_row_id)
        row.check_in()
        await self.session.flush()
        return row

    async def undo_check_in(self, participant_row_id: str) -> TournamentParticipant:
        row = await self.get(participant_row_id)
        row.undo_check_in()
        await self.session.flush()
        return row

    async def assign_seed(self, participant_row_id: str, seed: int | None) -> TournamentParticipant:
        row = await self.get(participant_row_id)
        row.assign_seed(seed)
        await self.session.flush()
        return row

    async def _charge_entry_fee(
        self,
        tournament: Tournament,
        participant: ParticipantRef,
        payer_user_id: str,
    ) -> str:
        wallet = await self.ledger.get_wallet_for_user(payer_user_id)
        # Sequence lets a participant who withdrew (and was refunded) register again
        prefix = entry_fee_key_prefix(tournament.id, participant.id)
        sequence = await self.ledger.count_keys_with_prefix(prefix) + 1
        try:
            tx = await self.ledger.debit(
                wallet.id,
                tournament.entry_fee,
                f"{prefix}{sequence}",
                memo=f"Entry fee for {tournament.name}",
                tx_type=TransactionType.ENTRY_FEE,
                tournament_id=tournament.id,
            )
        except DuplicateOperationError:
            # A concurrent registration for the same participant charged first
            raise AlreadyRegisteredError(tournament.id, participant.id)
        return tx.id
