"""
Error taxonomy for the match escrow and settlement engine.

Every error carries a user-facing message and the HTTP status the API
layer answers with. Nothing else is allowed to cross the API boundary.
"""


class MatchError(Exception):
    """Base class for all match engine errors."""

    http_status = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# === Validation (caller sent something malformed, no retry) ===

class ValidationError(MatchError):
    http_status = 400
    default_message = "Invalid request"


class InvalidEntryFee(ValidationError):
    default_message = "Entry fee must be at least 1 coin"


class SelfJoin(ValidationError):
    default_message = "Cannot join your own match"


class InvalidResult(ValidationError):
    default_message = "Result must be either 'win' or 'loss'"


class MissingEvidence(ValidationError):
    default_message = "A screenshot is required to claim a win"


class InvalidWinner(ValidationError):
    default_message = "Winner must be one of the match players"


class InvalidDecision(ValidationError):
    default_message = "Unknown decision"


class InvalidAmount(ValidationError):
    default_message = "Amount must be a positive whole number of coins"


class InvalidTransaction(ValidationError):
    default_message = "Only pending deposits and withdrawals can be reviewed"


# === Permission ===

class PermissionDenied(MatchError):
    http_status = 403
    default_message = "Not allowed"


class NotParticipant(PermissionDenied):
    default_message = "You are not a participant in this match"


class AccountBanned(PermissionDenied):
    default_message = "This account is banned from playing"


class AdminRequired(PermissionDenied):
    default_message = "Admin access required"


# === State conflicts (caller may re-fetch and retry) ===

class StateConflictError(MatchError):
    http_status = 409
    default_message = "Operation not allowed in the current state"


class MatchNotJoinable(StateConflictError):
    default_message = "Match is already full or no longer open"


class MatchNotActive(StateConflictError):
    default_message = "Match is not in progress"


class DuplicateSubmission(StateConflictError):
    default_message = "You have already submitted your result"


class AlreadySettled(StateConflictError):
    default_message = "Match has already been settled"


class MatchAlreadyTerminal(StateConflictError):
    default_message = "Match is already completed, cancelled or abandoned"


class DuplicatePendingRequest(StateConflictError):
    default_message = "A cancel request is already pending for this match"


class RequestAlreadyReviewed(StateConflictError):
    default_message = "This cancel request has already been reviewed"


class DisputeAlreadyClosed(StateConflictError):
    default_message = "Dispute is already closed"


class TransactionAlreadyReviewed(StateConflictError):
    default_message = "This transaction has already been processed"


# === Funds ===

class InsufficientFunds(MatchError):
    http_status = 402
    default_message = "Insufficient balance"


class InsufficientBalance(InsufficientFunds):
    pass


# === Lookups ===

class NotFoundError(MatchError):
    http_status = 404
    default_message = "Not found"


class UserNotFound(NotFoundError):
    default_message = "User not found"


class MatchNotFound(NotFoundError):
    default_message = "Match not found"


class CancelRequestNotFound(NotFoundError):
    default_message = "Cancel request not found"


class DisputeNotFound(NotFoundError):
    default_message = "Dispute not found"


class LedgerEntryNotFound(NotFoundError):
    default_message = "Ledger entry not found"


# === Infrastructure ===

class ConcurrencyRetryError(MatchError):
    """An optimistic update lost a race. Retried internally, never surfaced as-is."""

    http_status = 503
    default_message = "Temporary conflict, please retry"


class LedgerInvariantError(MatchError):
    """Money would be created or destroyed. Treated as fatal."""

    http_status = 500
    default_message = "Ledger invariant violated"
