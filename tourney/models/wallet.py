"""Wallet and ledger transaction models.

- Wallet: one balance per user, in minor currency units
- WalletTransaction: append-only record of every balance movement
- TransactionType / TransactionStatus: ledger vocabulary
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tourney.models.base import Base, TimestampMixin, UUIDMixin, utcnow
from tourney.tournament.state_machine import StateMachine, Transition


class TransactionType(str, Enum):
    """Transaction types for wallet operations."""

    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    ENTRY_FEE = "ENTRY_FEE"
    REFUND = "REFUND"
    PRIZE_PAYOUT = "PRIZE_PAYOUT"
    ADJUSTMENT_CREDIT = "ADJUSTMENT_CREDIT"
    ADJUSTMENT_DEBIT = "ADJUSTMENT_DEBIT"


CREDIT_TYPES = frozenset({
    TransactionType.DEPOSIT,
    TransactionType.REFUND,
    TransactionType.PRIZE_PAYOUT,
    TransactionType.ADJUSTMENT_CREDIT,
})
DEBIT_TYPES = frozenset({
    TransactionType.WITHDRAWAL,
    TransactionType.ENTRY_FEE,
    TransactionType.ADJUSTMENT_DEBIT,
})


class TransactionStatus(str, Enum):
    """Transaction status."""

    PENDING = "PENDING"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TRANSACTION_FSM: StateMachine[TransactionStatus] = StateMachine(
    "WalletTransaction",
    [
        Transition.of(TransactionStatus.PENDING, "complete", TransactionStatus.COMPLETED),
        Transition.of(TransactionStatus.PENDING, "fail", TransactionStatus.FAILED),
        Transition.of(TransactionStatus.REQUIRES_APPROVAL, "approve", TransactionStatus.COMPLETED),
        Transition.of(TransactionStatus.REQUIRES_APPROVAL, "reject", TransactionStatus.FAILED),
    ],
    terminal=[TransactionStatus.COMPLETED, TransactionStatus.FAILED],
)


class Wallet(Base, UUIDMixin, TimestampMixin):
    """User wallet. Balance is only changed together with a WalletTransaction."""

    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="balance_non_negative"),
    )

    user_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        comment="Owner id from the identity provider",
    )
    balance: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Balance in minor currency units",
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    transactions: Mapped[list["WalletTransaction"]] = relationship(
        "WalletTransaction",
        back_populates="wallet",
        lazy="raise",
    )

    def __repr__(self) -> str:
        return f"<Wallet {self.id} user={self.user_id} balance={self.balance}>"


class WalletTransaction(Base, UUIDMixin, TimestampMixin):
    """Ledger entry with balance snapshot and integrity hash.

    ``amount`` is always positive; the direction follows ``tx_type``.
    """

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
    )

    wallet_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("wallets.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    tx_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType, name="transaction_type"),
        nullable=False,
        index=True,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(TransactionStatus, name="transaction_status"),
        default=TransactionStatus.COMPLETED,
        nullable=False,
        index=True,
    )

    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Positive amount in minor units",
    )
    balance_before: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Wallet balance before the movement (null until money moves)",
    )
    balance_after: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Wallet balance after the movement (null until money moves)",
    )

    idempotency_key: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        comment="Caller-supplied key; an operation runs at most once per key",
    )
    reference_transaction_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("wallet_transactions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="Original transaction for refunds",
    )
    tournament_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("tournaments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Admin who approved or rejected a withdrawal",
    )
    transaction_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    integrity_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="SHA-256 over the immutable fields",
    )

    wallet: Mapped["Wallet"] = relationship(
        "Wallet",
        back_populates="transactions",
        lazy="raise",
    )

    @property
    def is_credit(self) -> bool:
        return self.tx_type in CREDIT_TYPES

    @property
    def is_debit(self) -> bool:
        return self.tx_type in DEBIT_TYPES

    @property
    def signed_amount(self) -> int:
        return self.amount if self.is_credit else -self.amount

    def set_status(self, event: str) -> None:
        """Advance status through TRANSACTION_FSM."""
        self.status = TRANSACTION_FSM.next_state(self.status, event)
        self.processed_at = utcnow()

    def __repr__(self) -> str:
        return f"<WalletTransaction {self.tx_type.value} {self.amount} {self.status.value}>"


@dataclass(frozen=True)
class TransactionRecord:
    """Detached copy of a WalletTransaction, safe to read after its session closes."""

    id: str
    wallet_id: str
    tx_type: TransactionType
    status: TransactionStatus
    amount: int
    balance_after: int | None
    idempotency_key: str | None
    reference_transaction_id: str | None
    tournament_id: str | None

    @classmethod
    def from_row(cls, tx: WalletTransaction) -> "TransactionRecord":
        return cls(
            id=tx.id,
            wallet_id=tx.wallet_id,
            tx_type=tx.tx_type,
            status=tx.status,
            amount=tx.amount,
            balance_after=tx.balance_after,
            idempotency_key=tx.idempotency_key,
            reference_transaction_id=tx.reference_transaction_id,
            tournament_id=tx.tournament_id,
        )
