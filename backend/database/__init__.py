"""Database module for Coinduel."""
from .models import (
    User,
    Match,
    MatchStatus,
    MatchResult,
    LedgerEntry,
    EntryKind,
    EntryStatus,
    EntryDirection,
    UserAccount,
    PlatformAccount,
    PLATFORM,
    CancelRequest,
    CancelReason,
    RequestStatus,
    DisputeEntry,
    DisputeType,
    DisputeSeverity,
    DisputeStatus,
    ActionTaken,
    AdminAction,
    TERMINAL_STATUSES,
    SETTLEABLE_STATUSES,
    IDLE_CANDIDATE_STATUSES,
)
from .repo import Database

__all__ = [
    "User",
    "Match",
    "MatchStatus",
    "MatchResult",
    "LedgerEntry",
    "EntryKind",
    "EntryStatus",
    "EntryDirection",
    "UserAccount",
    "PlatformAccount",
    "PLATFORM",
    "CancelRequest",
    "CancelReason",
    "RequestStatus",
    "DisputeEntry",
    "DisputeType",
    "DisputeSeverity",
    "DisputeStatus",
    "ActionTaken",
    "AdminAction",
    "TERMINAL_STATUSES",
    "SETTLEABLE_STATUSES",
    "IDLE_CANDIDATE_STATUSES",
    "Database",
]
