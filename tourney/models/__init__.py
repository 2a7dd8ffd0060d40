"""Database models."""

from tourney.models.base import Base, TimestampMixin, UUIDMixin
from tourney.models.dispute import DisputeStatus, DisputeTicket
from tourney.models.match import Match, MatchStatus
from tourney.models.tournament import (
    BracketType,
    CheckInStatus,
    Tournament,
    TournamentParticipant,
    TournamentStatus,
)
from tourney.models.wallet import (
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    Wallet,
    WalletTransaction,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "BracketType",
    "CheckInStatus",
    "DisputeStatus",
    "DisputeTicket",
    "Match",
    "MatchStatus",
    "Tournament",
    "TournamentParticipant",
    "TournamentStatus",
    "TransactionRecord",
    "TransactionStatus",
    "TransactionType",
    "Wallet",
    "WalletTransaction",
]
