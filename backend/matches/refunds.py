"""
Refunds: every cancellation path (player request, admin draw, idle reaper)
ends here. Stakes go back to whoever is seated and the match becomes
cancelled or abandoned, guarded by the same conditional update as settlement.
"""
import logging
from datetime import datetime
from typing import List, Optional

from database import Database, Match, MatchStatus, EntryKind
from errors import ValidationError
from ledger import post_credit
from notifications import Notification, MATCH_REFUNDED, dispatch
from .state import load_match, ensure_not_terminal

logger = logging.getLogger(__name__)

REFUND_STATUSES = (MatchStatus.CANCELLED, MatchStatus.ABANDONED)


def apply_refund(
    db: Database,
    cursor,
    match: Match,
    terminal_status: MatchStatus = MatchStatus.CANCELLED,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Notification]:
    """Refund `match` (already read on `cursor`) and close it.

    Raises AlreadySettled / MatchAlreadyTerminal when the match is already
    closed, so a second refund never credits anyone.
    """
    if terminal_status not in REFUND_STATUSES:
        raise ValidationError(f"Cannot refund into status {terminal_status.value}")
    ensure_not_terminal(match)

    expected_status, expected_version = match.status, match.version
    match.status = terminal_status
    match.completed_at = now or datetime.utcnow()
    if terminal_status == MatchStatus.ABANDONED:
        match.abandon_reason = reason
    db.compare_and_set_match(cursor, match, expected_status, expected_version)

    notifications = []
    for player_id in match.players():
        post_credit(
            db, cursor, player_id, EntryKind.REFUND, match.entry_fee,
            match_id=match.match_id,
            description=f"Refund for {terminal_status.value} match {match.match_id}"
            + (f": {reason}" if reason else ""),
        )
        notifications.append(Notification(player_id, MATCH_REFUNDED, match.entry_fee, match.match_id))

    logger.info(
        f"[REFUND] Match {match.match_id} {expected_status.value} -> {terminal_status.value} | "
        f"{match.entry_fee} back to {list(match.players())}" + (f" | {reason}" if reason else "")
    )
    return notifications


def refund(
    db: Database,
    match_id: str,
    terminal_status: MatchStatus = MatchStatus.CANCELLED,
    reason: Optional[str] = None,
    notifier=None,
) -> Match:
    """Refund a match as its own unit of work."""
    result = {}

    def _refund(cursor):
        match = load_match(db, cursor, match_id)
        result["notifications"] = apply_refund(db, cursor, match, terminal_status, reason)
        return match

    match = db.atomic(_refund, label="refund match")
    dispatch(notifier, result["notifications"])
    return match
