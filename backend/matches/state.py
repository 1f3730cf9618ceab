"""
Match state machine guards and lookups.

    waiting --join--> in-progress --agreement--> completed
    waiting --cancel/idle--> cancelled/abandoned
    in-progress --conflict--> conflict --admin--> completed | cancelled
    in-progress --cancel/idle--> cancelled/abandoned

completed, cancelled and abandoned are terminal.
"""
import uuid
from typing import List

from database import Database, Match, MatchStatus
from errors import MatchNotFound, AlreadySettled, MatchAlreadyTerminal


def new_match_id() -> str:
    return f"match_{uuid.uuid4().hex[:12]}"


def load_match(db: Database, cursor, match_id: str) -> Match:
    """Read a match inside the current transaction."""
    match = db.get_match(match_id, cursor)
    if not match:
        raise MatchNotFound()
    return match


def ensure_not_terminal(match: Match):
    """Guard for every operation that moves a match's money.

    A completed match reports AlreadySettled so a repeated settle or
    override is a clean no-op error rather than a second payout.
    """
    if match.status == MatchStatus.COMPLETED:
        raise AlreadySettled()
    if match.is_terminal:
        raise MatchAlreadyTerminal(f"Match is already {match.status.value}")


def get_match(db: Database, match_id: str) -> Match:
    match = db.get_match(match_id)
    if not match:
        raise MatchNotFound()
    return match


def list_open_matches(db: Database, limit: int = 50) -> List[Match]:
    """Matches waiting for an opponent, newest first."""
    return db.list_matches(status=MatchStatus.WAITING, limit=limit)
