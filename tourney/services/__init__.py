"""Business logic services."""

from tourney.services.dispute import DisputeService, ScoreOverrides
from tourney.services.match import MatchService
from tourney.services.registry import ParticipantRegistry
from tourney.services.settlement import (
    CancellationSummary,
    DecisionResult,
    PayoutResult,
    RefundResult,
    SettlementSummary,
    TournamentDecision,
    TournamentSettlement,
)
from tourney.services.tournament import TournamentService
from tourney.services.wallet import WalletLedger

__all__ = [
    # Wallet
    "WalletLedger",
    # Tournament
    "TournamentService",
    "ParticipantRegistry",
    # Match / dispute
    "MatchService",
    "DisputeService",
    "ScoreOverrides",
    # Settlement
    "TournamentSettlement",
    "TournamentDecision",
    "DecisionResult",
    "CancellationSummary",
    "RefundResult",
    "SettlementSummary",
    "PayoutResult",
]
