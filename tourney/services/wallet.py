"""Wallet ledger: debits, credits, refunds and withdrawal approvals.

Every balance change happens under a ``SELECT ... FOR UPDATE`` lock on the
wallet row and is paired with exactly one WalletTransaction. Operations that
carry an idempotency key run at most once per key; a repeat raises
DuplicateOperationError with the original transaction attached.

The ledger works on the caller's session and never commits, so an entry-fee
debit and the participant insert land in the same transaction.
"""

import hashlib
import logging
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.errors import (
    ConflictError,
    DuplicateOperationError,
    InsufficientFundsError,
    NotFoundError,
    NotRefundableError,
    ValidationError,
)
from tourney.models.base import utcnow
from tourney.models.wallet import (
    CREDIT_TYPES,
    DEBIT_TYPES,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    Wallet,
    WalletTransaction,
)

logger = logging.getLogger(__name__)


class WalletLedger:
    """Ledger operations on user wallets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # =========================================================================
    # Lookups
    # =========================================================================

    async def open_wallet(self, user_id: str, currency: str = "USD") -> Wallet:
        """Create a wallet for a user, or return the existing one."""
        existing = await self.session.scalar(select(Wallet).where(Wallet.user_id == user_id))
        if existing:
            return existing

        wallet = Wallet(id=str(uuid4()), user_id=user_id, balance=0, currency=currency)
        self.session.add(wallet)
        await self.session.flush()
        return wallet

    async def get_wallet(self, wallet_id: str, *, lock: bool = False) -> Wallet:
        query = select(Wallet).where(Wallet.id == wallet_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        wallet = await self.session.scalar(query)
        if wallet is None:
            raise NotFoundError("Wallet", wallet_id)
        return wallet

    async def get_wallet_for_user(self, user_id: str, *, lock: bool = False) -> Wallet:
        query = select(Wallet).where(Wallet.user_id == user_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        wallet = await self.session.scalar(query)
        if wallet is None:
            raise NotFoundError("Wallet", f"user:{user_id}")
        return wallet

    async def get_transaction(self, transaction_id: str, *, lock: bool = False) -> WalletTransaction:
        query = select(WalletTransaction).where(WalletTransaction.id == transaction_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        tx = await self.session.scalar(query)
        if tx is None:
            raise NotFoundError("WalletTransaction", transaction_id)
        return tx

    async def find_by_idempotency_key(self, idempotency_key: str) -> WalletTransaction | None:
        return await self.session.scalar(
            select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
        )

    async def count_keys_with_prefix(self, prefix: str) -> int:
        return await self.session.scalar(
            select(func.count())
            .select_from(WalletTransaction)
            .where(WalletTransaction.idempotency_key.startswith(prefix, autoescape=True))
        ) or 0

    async def is_refunded(self, original_transaction_id: str) -> bool:
        refund_id = await self.session.scalar(
            select(WalletTransaction.id).where(
                WalletTransaction.reference_transaction_id == original_transaction_id,
                WalletTransaction.tx_type == TransactionType.REFUND,
                WalletTransaction.status == TransactionStatus.COMPLETED,
            )
        )
        return refund_id is not None

    async def get_transactions(
        self,
        wallet_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        tx_type: TransactionType | None = None,
    ) -> list[WalletTransaction]:
        """Transaction history, newest first."""
        query = (
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet_id)
            .order_by(WalletTransaction.transaction_date.desc())
            .offset(offset)
            .limit(limit)
        )
        if tx_type:
            query = query.where(WalletTransaction.tx_type == tx_type)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    # =========================================================================
    # Balance movements
    # =========================================================================

    async def debit(
        self,
        wallet_id: str,
        amount: int,
        idempotency_key: str | None,
        memo: str | None = None,
        *,
        tx_type: TransactionType = TransactionType.ENTRY_FEE,
        tournament_id: str | None = None,
    ) -> WalletTransaction:
        """Take ``amount`` from a wallet.

        Raises:
            ValidationError: amount not positive or tx_type is not a debit
            InsufficientFundsError: balance below amount
            DuplicateOperationError: idempotency key already used
        """
        if tx_type not in DEBIT_TYPES:
            raise ValidationError(f"{tx_type.value} is not a debit type")
        return await self._move(
            wallet_id, -amount, amount, tx_type, idempotency_key, memo,
            tournament_id=tournament_id,
        )

    async def credit(
        self,
        wallet_id: str,
        amount: int,
        idempotency_key: str | None,
        memo: str | None = None,
        *,
        tx_type: TransactionType = TransactionType.DEPOSIT,
        tournament_id: str | None = None,
    ) -> WalletTransaction:
        """Add ``amount`` to a wallet."""
        if tx_type not in CREDIT_TYPES or tx_type == TransactionType.REFUND:
            raise ValidationError(f"{tx_type.value} is not a plain credit type")
        return await self._move(
            wallet_id, amount, amount, tx_type, idempotency_key, memo,
            tournament_id=tournament_id,
        )

    async def refund(
        self,
        original_transaction_id: str,
        idempotency_key: str,
        memo: str | None = None,
    ) -> WalletTransaction:
        """Return the full amount of a completed debit to its wallet.

        Raises:
            NotRefundableError: original is not a completed debit, or was refunded
            DuplicateOperationError: idempotency key already used
        """
        original = await self.get_transaction(original_transaction_id)
        wallet = await self.get_wallet(original.wallet_id, lock=True)
        await self._ensure_key_unused(idempotency_key)

        if not original.is_debit:
            raise NotRefundableError(
                f"{original.tx_type.value} transactions cannot be refunded",
                details={"transactionId": original.id},
            )
        if original.status != TransactionStatus.COMPLETED:
            raise NotRefundableError(
                f"Transaction is {original.status.value}, only completed debits can be refunded",
                details={"transactionId": original.id},
            )
        if await self.is_refunded(original.id):
            raise NotRefundableError(
                "Transaction was already refunded",
                details={"transactionId": original.id},
            )

        return await self._apply(
            wallet,
            original.amount,
            original.amount,
            TransactionType.REFUND,
            idempotency_key,
            memo or f"Refund of {original.tx_type.value.lower()} {original.id}",
            tournament_id=original.tournament_id,
            reference_transaction_id=original.id,
        )

    # =========================================================================
    # Withdrawals (admin approval)
    # =========================================================================

    async def request_withdrawal(
        self,
        wallet_id: str,
        amount: int,
        idempotency_key: str,
        memo: str | None = None,
    ) -> WalletTransaction:
        """Record a withdrawal awaiting approval. No money moves yet.

        Repeating a request with the same key returns the existing request.
        """
        self._validate_amount(amount)
        wallet = await self.get_wallet(wallet_id, lock=True)

        existing = await self.find_by_idempotency_key(idempotency_key)
        if existing is not None:
            if (
                existing.wallet_id == wallet.id
                and existing.amount == amount
                and existing.tx_type == TransactionType.WITHDRAWAL
            ):
                return existing
            raise ConflictError(
                "Idempotency key was already used for a different operation",
                details={"idempotencyKey": idempotency_key},
            )

        pending = await self._pending_withdrawals(wallet.id)
        available = wallet.balance - pending
        if available < amount:
            raise InsufficientFundsError(required=amount, available=available)

        tx = WalletTransaction(
            id=str(uuid4()),
            wallet_id=wallet.id,
            tx_type=TransactionType.WITHDRAWAL,
            status=TransactionStatus.REQUIRES_APPROVAL,
            amount=amount,
            idempotency_key=idempotency_key,
            memo=memo,
            transaction_date=utcnow(),
        )
        self.session.add(tx)
        await self.session.flush()

        logger.info(f"Withdrawal requested: wallet={wallet.id} amount={amount:,}")
        return tx

    async def approve_withdrawal(
        self,
        transaction_id: str,
        admin_id: str,
        notes: str | None = None,
    ) -> WalletTransaction:
        """Debit the wallet for a pending withdrawal and complete it."""
        tx = await self.get_transaction(transaction_id)
        wallet = await self.get_wallet(tx.wallet_id, lock=True)
        tx = await self.get_transaction(transaction_id, lock=True)
        if tx.tx_type != TransactionType.WITHDRAWAL:
            raise ValidationError("Only withdrawals need approval")

        tx.set_status("approve")
        if wallet.balance < tx.amount:
            raise InsufficientFundsError(required=tx.amount, available=wallet.balance)

        tx.balance_before = wallet.balance
        wallet.balance -= tx.amount
        tx.balance_after = wallet.balance
        tx.processed_by = admin_id
        if notes:
            tx.memo = f"{tx.memo}\n{notes}" if tx.memo else notes
        tx.integrity_hash = self._compute_integrity_hash(tx)
        await self.session.flush()

        logger.info(
            f"Withdrawal approved: tx={tx.id} by={admin_id} "
            f"balance={tx.balance_before:,} -> {tx.balance_after:,}"
        )
        return tx

    async def reject_withdrawal(
        self,
        transaction_id: str,
        admin_id: str,
        reason: str,
    ) -> WalletTransaction:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        tx = await self.get_transaction(transaction_id, lock=True)
        if tx.tx_type != TransactionType.WITHDRAWAL:
            raise ValidationError("Only withdrawals need approval")

        tx.set_status("reject")
        tx.processed_by = admin_id
        tx.memo = f"{tx.memo}\nRejected: {reason}" if tx.memo else f"Rejected: {reason}"
        await self.session.flush()

        logger.info(f"Withdrawal rejected: tx={tx.id} by={admin_id}")
        return tx

    # =========================================================================
    # Integrity
    # =========================================================================

    @staticmethod
    def _compute_integrity_hash(tx: WalletTransaction) -> str:
        """SHA-256 over the fields that must never change after completion."""
        data = (
            f"{tx.id}:{tx.wallet_id}:{tx.tx_type.value}:{tx.amount}:"
            f"{tx.balance_before}:{tx.balance_after}:{tx.idempotency_key or ''}"
        )
        return hashlib.sha256(data.encode()).hexdigest()

    @staticmethod
    def verify_integrity(tx: WalletTransaction) -> bool:
        return tx.integrity_hash == WalletLedger._compute_integrity_hash(tx)

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Amount must be a positive integer", details={"amount": amount})

    async def _ensure_key_unused(self, idempotency_key: str | None) -> None:
        if idempotency_key is None:
            return
        prior = await self.find_by_idempotency_key(idempotency_key)
        if prior is not None:
            raise DuplicateOperationError(idempotency_key, TransactionRecord.from_row(prior))

    async def _pending_withdrawals(self, wallet_id: str) -> int:
        return await self.session.scalar(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.wallet_id == wallet_id,
                WalletTransaction.tx_type == TransactionType.WITHDRAWAL,
                WalletTransaction.status == TransactionStatus.REQUIRES_APPROVAL,
            )
        ) or 0

    async def _move(
        self,
        wallet_id: str,
        delta: int,
        amount: int,
        tx_type: TransactionType,
        idempotency_key: str | None,
        memo: str | None,
        *,
        tournament_id: str | None = None,
    ) -> WalletTransaction:
        self._validate_amount(amount)
        wallet = await self.get_wallet(wallet_id, lock=True)
        # Checked after the lock so a concurrent holder of the same key has committed
        await self._ensure_key_unused(idempotency_key)
        return await self._apply(
            wallet, delta, amount, tx_type, idempotency_key, memo,
            tournament_id=tournament_id,
        )

    async def _apply(
        self,
        wallet: Wallet,
        delta: int,
        amount: int,
        tx_type: TransactionType,
        idempotency_key: str | None,
        memo: str | None,
        *,
        tournament_id: str | None = None,
        reference_transaction_id: str | None = None,
    ) -> WalletTransaction:
        balance_before = wallet.balance
        if balance_before + delta < 0:
            raise InsufficientFundsError(required=amount, available=balance_before)

        wallet.balance = balance_before + delta
        tx = WalletTransaction(
            id=str(uuid4()),
            wallet_id=wallet.id,
            tx_type=tx_type,
            status=TransactionStatus.COMPLETED,
            amount=amount,
            balance_before=balance_before,
            balance_after=wallet.balance,
            idempotency_key=idempotency_key,
            reference_transaction_id=reference_transaction_id,
            tournament_id=tournament_id,
            memo=memo,
            transaction_date=utcnow(),
            processed_at=utcnow(),
        )
        tx.integrity_hash = self._compute_integrity_hash(tx)
        self.session.add(tx)
        await self.session.flush()

        logger.info(
            f"Wallet {tx_type.value.lower()}: wallet={wallet.id} amount={delta:+,} "
            f"balance={balance_before:,} -> {wallet.balance:,}"
        )
        return tx
