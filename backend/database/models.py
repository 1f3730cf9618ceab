"""
Data models for Coinduel matches, ledger and review queues.
"""
from dataclasses import dataclass, field
from typing import Optional, Union, Tuple
from datetime import datetime
from enum import Enum


class MatchStatus(Enum):
    """Status of a match."""
    WAITING = "waiting"          # Creator escrowed, waiting for opponent
    IN_PROGRESS = "in-progress"  # Both stakes escrowed, waiting for results
    CONFLICT = "conflict"        # Results disagree, waiting for an admin
    COMPLETED = "completed"      # Winner paid
    CANCELLED = "cancelled"      # Stakes refunded (user request or admin)
    ABANDONED = "abandoned"      # Stakes refunded by the idle reaper


TERMINAL_STATUSES = frozenset({MatchStatus.COMPLETED, MatchStatus.CANCELLED, MatchStatus.ABANDONED})
SETTLEABLE_STATUSES = frozenset({MatchStatus.IN_PROGRESS, MatchStatus.CONFLICT})
IDLE_CANDIDATE_STATUSES = frozenset({MatchStatus.WAITING, MatchStatus.IN_PROGRESS})


class MatchResult(Enum):
    """Result a player reports for themself."""
    WIN = "win"
    LOSS = "loss"


class EntryKind(Enum):
    """Kind of ledger entry."""
    ESCROW_DEBIT = "escrow-debit"          # Stake leaves a player's balance
    ESCROW_CREDIT = "escrow-credit"        # Stake enters the match pot (platform side)
    REFUND = "refund"
    WINNINGS = "winnings"
    PLATFORM_FEE = "platform-fee"
    REFERRAL_REWARD = "referral-reward"
    ADMIN_ADJUSTMENT = "admin-adjustment"
    DEPOSIT = "deposit"                    # Player-requested top-up, credited on approval
    WITHDRAWAL = "withdrawal"              # Player-requested payout, reserved on request


class EntryStatus(Enum):
    """Review state. Only deposits and withdrawals are ever pending."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EntryDirection(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


@dataclass(frozen=True)
class UserAccount:
    """Ledger account owned by a player."""
    user_id: int


@dataclass(frozen=True)
class PlatformAccount:
    """The operator's own ledger account. Never backed by a user balance."""


PLATFORM = PlatformAccount()
LedgerAccount = Union[UserAccount, PlatformAccount]


@dataclass
class User:
    """Player account."""
    user_id: Optional[int]  # Auto-incrementing ID, None until saved
    username: str
    telegram_id: Optional[int] = None  # Chat for notifications, if linked

    balance: int = 0  # Coins. Only ever changed alongside a ledger entry.

    # Referral System (referred_by is written once, at creation)
    referral_code: Optional[str] = None
    referred_by: Optional[int] = None

    # Moderation
    is_admin: bool = False
    flagged: bool = False
    flag_reason: Optional[str] = None
    flagged_at: Optional[datetime] = None
    is_banned: bool = False
    ban_reason: Optional[str] = None

    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Match:
    """A two-player wagered match."""
    match_id: str
    player1_id: int
    entry_fee: int
    pot: int           # 2 * entry_fee, fixed at creation
    platform_cut: int  # floor(pot * cut%), fixed at creation
    room_code: str

    player2_id: Optional[int] = None
    status: MatchStatus = MatchStatus.WAITING

    # Self-reported results
    player1_result: Optional[MatchResult] = None
    player2_result: Optional[MatchResult] = None
    player1_evidence: Optional[str] = None  # Evidence store reference
    player2_evidence: Optional[str] = None

    winner_id: Optional[int] = None

    # Audit
    abandon_reason: Optional[str] = None
    override_reason: Optional[str] = None
    overridden_by: Optional[int] = None

    # Optimistic concurrency token, bumped on every state change
    version: int = 0

    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def winnings(self) -> int:
        """What the winner is paid."""
        return self.pot - self.platform_cut

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def players(self) -> Tuple[int, ...]:
        """Players whose stakes are in escrow."""
        if self.player2_id is None:
            return (self.player1_id,)
        return (self.player1_id, self.player2_id)

    def is_participant(self, user_id: int) -> bool:
        return user_id in self.players()

    def opponent_of(self, user_id: int) -> Optional[int]:
        if user_id == self.player1_id:
            return self.player2_id
        if user_id == self.player2_id:
            return self.player1_id
        return None

    def result_of(self, user_id: int) -> Optional[MatchResult]:
        if user_id == self.player1_id:
            return self.player1_result
        if user_id == self.player2_id:
            return self.player2_result
        return None


@dataclass
class LedgerEntry:
    """Immutable record of a balance-affecting event."""
    entry_id: str
    account: LedgerAccount
    kind: EntryKind
    direction: EntryDirection
    amount: int  # Always positive, direction carries the sign
    status: EntryStatus = EntryStatus.APPROVED

    match_id: Optional[str] = None
    description: Optional[str] = None
    external_ref: Optional[str] = None  # Payment proof or payout destination

    # Review of pending entries
    reviewed_by: Optional[int] = None
    review_note: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def user_id(self) -> Optional[int]:
        if isinstance(self.account, UserAccount):
            return self.account.user_id
        return None

    @property
    def signed_amount(self) -> int:
        """Effect on the owning account's balance."""
        if self.direction == EntryDirection.CREDIT:
            return self.amount
        return -self.amount

    @property
    def applies_to_balance(self) -> bool:
        """Approved entries count. A pending debit is a reservation and counts
        too. Pending credits and anything rejected do not."""
        if self.status == EntryStatus.APPROVED:
            return True
        return self.status == EntryStatus.PENDING and self.direction == EntryDirection.DEBIT


class CancelReason(Enum):
    OPPONENT_NOT_RESPONDING = "opponent_not_responding"
    TECHNICAL_ISSUES = "technical_issues"
    GAME_CRASHED = "game_crashed"
    WRONG_MATCH_JOINED = "wrong_match_joined"
    UNFAIR_PLAY = "unfair_play"
    PERSONAL_EMERGENCY = "personal_emergency"
    OTHER = "other"


class RequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class CancelRequest:
    """A player's request to cancel a match, reviewed by an admin."""
    request_id: str
    match_id: str
    requested_by: int
    reason: CancelReason
    evidence: Optional[str] = None

    status: RequestStatus = RequestStatus.PENDING
    reviewed_by: Optional[int] = None
    review_note: Optional[str] = None

    created_at: datetime = field(default_factory=datetime.utcnow)
    reviewed_at: Optional[datetime] = None


class DisputeType(Enum):
    CONFLICT = "conflict"
    CANCEL_REQUEST = "cancel_request"
    REPEATED_DISPUTE = "repeated_dispute"
    SUSPICIOUS_BEHAVIOR = "suspicious_behavior"
    FAKE_PROOF = "fake_proof"
    PAYMENT_DISPUTE = "payment_dispute"


class DisputeSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DisputeStatus(Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ActionTaken(Enum):
    NONE = "none"
    WARNING = "warning"
    TEMPORARY_BAN = "temporary_ban"
    PERMANENT_BAN = "permanent_ban"
    ACCOUNT_RESTRICTION = "account_restriction"


@dataclass
class DisputeEntry:
    """Append-only record of a suspicious or conflicting event."""
    dispute_id: Optional[int]
    user_id: int
    dispute_type: DisputeType
    description: str
    severity: DisputeSeverity

    match_id: Optional[str] = None
    risk_score: int = 0
    auto_flagged: bool = False
    evidence: dict = field(default_factory=dict)

    status: DisputeStatus = DisputeStatus.OPEN
    action_taken: ActionTaken = ActionTaken.NONE
    admin_notes: Optional[str] = None
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class AdminAction:
    """Accountability record for a privileged operation. Never updated."""
    action_id: Optional[int]
    admin_id: int
    action: str
    target_type: str  # match, user, cancel_request, dispute
    target_id: str
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)
