"""Exception classes for tournament, match, dispute and wallet errors.

Every error carries an ``ErrorKind`` (the coarse category callers branch on,
e.g. to pick an HTTP status) and an ``ErrorCode`` (the specific failure).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from tourney.models.wallet import TransactionRecord


class ErrorKind(str, Enum):
    """Coarse error categories."""

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONFLICT = "CONFLICT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    FORBIDDEN = "FORBIDDEN"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    INTERNAL = "INTERNAL"


class ErrorCode(str, Enum):
    """Specific error codes for programmatic handling."""

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"

    # Wallet
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    DUPLICATE_OPERATION = "DUPLICATE_OPERATION"
    NOT_REFUNDABLE = "NOT_REFUNDABLE"

    # Registration
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    REGISTRATION_CLOSED = "REGISTRATION_CLOSED"
    TOURNAMENT_FULL = "TOURNAMENT_FULL"

    # Match
    NOT_PARTICIPANT = "NOT_PARTICIPANT"
    INVALID_MATCH_STATUS = "INVALID_MATCH_STATUS"
    INVALID_WINNER = "INVALID_WINNER"

    # Dispute
    DISPUTE_ALREADY_OPEN = "DISPUTE_ALREADY_OPEN"
    MATCH_NOT_DISPUTABLE = "MATCH_NOT_DISPUTABLE"
    INVALID_DISPUTE_STATUS = "INVALID_DISPUTE_STATUS"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"


class TourneyError(Exception):
    """Base exception for domain errors.

    Attributes:
        kind: Error category
        code: Error code for programmatic handling
        message: User-facing error message
        details: Additional error details
        recoverable: Whether retrying (possibly after a change) can succeed
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        code: ErrorCode | str | None = None,
    ):
        code = code or self.default_code
        self.code = code.value if isinstance(code, Enum) else code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind.value,
            "errorCode": self.code,
            "errorMessage": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Error kinds
# =============================================================================


class ValidationError(TourneyError):
    kind = ErrorKind.VALIDATION
    default_code = ErrorCode.INVALID_REQUEST
    recoverable = True


class NotFoundError(TourneyError):
    kind = ErrorKind.NOT_FOUND
    default_code = ErrorCode.NOT_FOUND

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity} not found: {entity_id}",
            details={"entity": entity, "id": entity_id},
        )


class InvalidTransitionError(TourneyError):
    """Raised when a state machine rejects an event in the current state."""

    kind = ErrorKind.INVALID_TRANSITION
    default_code = ErrorCode.INVALID_TRANSITION

    def __init__(
        self,
        message: str | None = None,
        *,
        entity: str | None = None,
        from_state: str | None = None,
        event: str | None = None,
        details: dict[str, Any] | None = None,
        code: ErrorCode | str | None = None,
    ):
        if message is None:
            message = f"Cannot {event} {entity or 'entity'} in status {from_state}"
        merged = {"entity": entity, "fromState": from_state, "event": event}
        merged.update(details or {})
        super().__init__(message, details=merged, code=code)
        self.from_state = from_state
        self.event = event


class ConflictError(TourneyError):
    kind = ErrorKind.CONFLICT
    default_code = ErrorCode.CONFLICT
    recoverable = True


class InsufficientFundsError(TourneyError):
    """Raised when a wallet balance cannot cover a debit."""

    kind = ErrorKind.INSUFFICIENT_FUNDS
    default_code = ErrorCode.INSUFFICIENT_FUNDS
    recoverable = True

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient funds: required {required}, available {available}",
            details={"required": required, "available": available},
        )


class ForbiddenError(TourneyError):
    kind = ErrorKind.FORBIDDEN
    default_code = ErrorCode.FORBIDDEN


class AlreadyTerminalError(InvalidTransitionError):
    """Raised when an entity is already COMPLETED/CANCELED."""

    kind = ErrorKind.ALREADY_TERMINAL
    default_code = ErrorCode.ALREADY_TERMINAL


class InternalError(TourneyError):
    kind = ErrorKind.INTERNAL
    default_code = ErrorCode.INTERNAL_ERROR


# =============================================================================
# Wallet errors
# =============================================================================


class DuplicateOperationError(ConflictError):
    """Raised when an idempotency key was already used.

    ``prior_transaction`` is a detached copy of the transaction recorded under
    that key; it stays readable after the unit of work rolls back, so
    callers can return the original outcome instead of failing.
    """

    default_code = ErrorCode.DUPLICATE_OPERATION

    def __init__(self, idempotency_key: str, prior_transaction: TransactionRecord):
        super().__init__(
            f"Operation already processed for key {idempotency_key}",
            details={
                "idempotencyKey": idempotency_key,
                "transactionId": prior_transaction.id,
            },
        )
        self.idempotency_key = idempotency_key
        self.prior_transaction = prior_transaction


class NotRefundableError(ValidationError):
    default_code = ErrorCode.NOT_REFUNDABLE
    recoverable = False


# =============================================================================
# Registration errors
# =============================================================================


class AlreadyRegisteredError(ConflictError):
    default_code = ErrorCode.ALREADY_REGISTERED
    recoverable = False

    def __init__(self, tournament_id: str, participant_id: str):
        super().__init__(
            "Participant is already registered for this tournament",
            details={"tournamentId": tournament_id, "participantId": participant_id},
        )


class RegistrationClosedError(InvalidTransitionError):
    default_code = ErrorCode.REGISTRATION_CLOSED

    def __init__(self, tournament_id: str, status: str):
        super().__init__(
            "Tournament is not open for registration",
            entity="Tournament",
            from_state=status,
            event="register",
            details={"tournamentId": tournament_id},
        )


class TournamentFullError(ConflictError):
    default_code = ErrorCode.TOURNAMENT_FULL
    recoverable = False

    def __init__(self, tournament_id: str, max_participants: int):
        super().__init__(
            "Tournament is full",
            details={"tournamentId": tournament_id, "maxParticipants": max_participants},
        )


# =============================================================================
# Match and dispute errors
# =============================================================================


class NotParticipantError(ForbiddenError):
    default_code = ErrorCode.NOT_PARTICIPANT

    def __init__(self, match_id: str, user_id: str):
        super().__init__(
            "Caller is not a participant of this match",
            details={"matchId": match_id, "userId": user_id},
        )


class InvalidMatchStatusError(InvalidTransitionError):
    default_code = ErrorCode.INVALID_MATCH_STATUS


class InvalidWinnerError(ValidationError):
    default_code = ErrorCode.INVALID_WINNER

    def __init__(self, match_id: str, winner_id: str):
        super().__init__(
            "Winner must be one of the match participants",
            details={"matchId": match_id, "winnerId": winner_id},
        )


class DisputeAlreadyOpenError(ConflictError):
    default_code = ErrorCode.DISPUTE_ALREADY_OPEN
    recoverable = False

    def __init__(self, match_id: str):
        super().__init__(
            "An open dispute already exists for this match",
            details={"matchId": match_id},
        )


class MatchNotDisputableError(InvalidTransitionError):
    default_code = ErrorCode.MATCH_NOT_DISPUTABLE


class InvalidDisputeStatusError(InvalidTransitionError):
    default_code = ErrorCode.INVALID_DISPUTE_STATUS


class AlreadyResolvedError(InvalidDisputeStatusError):
    """Raised when a dispute already reached a terminal status.

    A moderator losing a concurrent resolve race gets this after the row lock
    is acquired and the status re-checked.
    """

    kind = ErrorKind.ALREADY_RESOLVED
    default_code = ErrorCode.ALREADY_RESOLVED
