"""
Admin override and dispute resolution.

Overrides move money only through the settlement and refund primitives.
Dispute resolution never moves money at all: it annotates the dispute and
may flag or ban the user.
"""
import logging
from datetime import datetime
from typing import Optional, Union

from database import (
    Database,
    Match,
    MatchStatus,
    DisputeEntry,
    DisputeStatus,
    ActionTaken,
)
from errors import InvalidWinner, ValidationError, DisputeNotFound, DisputeAlreadyClosed, UserNotFound
from notifications import Notification, ADMIN_ACTION, dispatch
from security import AdminActionLog, dispute_action
from security.audit import MATCH_OVERRIDE
from utils import sanitize_text
from .refunds import apply_refund
from .settlement import apply_settlement
from .state import load_match, ensure_not_terminal

logger = logging.getLogger(__name__)

DRAW = "draw"

DISPUTE_ACTIONS = {
    "resolve": DisputeStatus.RESOLVED,
    "dismiss": DisputeStatus.DISMISSED,
    "investigate": DisputeStatus.INVESTIGATING,
    "take_action": DisputeStatus.RESOLVED,
}
CLOSED_DISPUTE_STATUSES = {DisputeStatus.RESOLVED, DisputeStatus.DISMISSED}
FLAGGING_ACTIONS = {ActionTaken.TEMPORARY_BAN, ActionTaken.PERMANENT_BAN, ActionTaken.ACCOUNT_RESTRICTION}


def override_match(
    db: Database,
    match_id: str,
    winner: Union[int, str],
    reason: str,
    admin_id: int,
    notifier=None,
) -> Match:
    """Settle or refund a match by admin decision.

    Args:
        db: Database instance
        match_id: Match ID
        winner: Winning player's user ID, or "draw" to refund both stakes
        reason: Why the admin overrode the match
        admin_id: Acting admin

    Raises:
        AlreadySettled, MatchAlreadyTerminal, InvalidWinner, MatchNotActive,
        MatchNotFound, ValidationError
    """
    reason = sanitize_text(reason or "")
    if not reason:
        raise ValidationError("An override reason is required")

    is_draw = isinstance(winner, str) and winner.lower() == DRAW
    if not is_draw:
        try:
            winner = int(winner)
        except (TypeError, ValueError):
            raise InvalidWinner()

    outcome = {}

    def _override(cursor):
        match = load_match(db, cursor, match_id)
        ensure_not_terminal(match)
        outcome["previous_status"] = match.status.value
        outcome["results"] = {
            "player1_result": match.player1_result.value if match.player1_result else None,
            "player2_result": match.player2_result.value if match.player2_result else None,
        }

        match.override_reason = reason
        match.overridden_by = admin_id
        if is_draw:
            outcome["notifications"] = apply_refund(db, cursor, match, MatchStatus.CANCELLED, reason=reason)
        else:
            if winner not in (match.player1_id, match.player2_id):
                raise InvalidWinner()
            outcome["notifications"] = apply_settlement(db, cursor, match, winner)
        return match

    match = db.atomic(_override, label="override match")
    decision = DRAW if is_draw else winner
    logger.warning(f"[OVERRIDE] Admin {admin_id} overrode match {match_id}: {decision} | {reason}")

    AdminActionLog(db).record(
        admin_id,
        MATCH_OVERRIDE,
        "match",
        match_id,
        {
            "decision": decision,
            "reason": reason,
            "previous_status": outcome["previous_status"],
            "reported_results": outcome["results"],
            "new_status": match.status.value,
        },
    )
    dispatch(notifier, outcome["notifications"])
    return match


def resolve_dispute(
    db: Database,
    dispute_id: int,
    action: str,
    admin_id: int,
    notes: Optional[str] = None,
    action_taken: Optional[Union[ActionTaken, str]] = None,
    notifier=None,
) -> DisputeEntry:
    """Review a dispute entry.

    Actions: resolve, dismiss, investigate, take_action. take_action needs an
    action_taken; bans and restrictions flag the user, a permanent ban also
    bans the account. Match funds are never touched here.
    """
    action = (action or "").lower()
    if action not in DISPUTE_ACTIONS:
        raise ValidationError(f"Action must be one of: {', '.join(DISPUTE_ACTIONS)}")

    if action == "take_action":
        if not action_taken:
            raise ValidationError("take_action requires an action_taken")
        try:
            action_taken = ActionTaken(action_taken) if isinstance(action_taken, str) else action_taken
        except ValueError:
            raise ValidationError(f"Unknown action_taken '{action_taken}'")
    else:
        action_taken = None

    notes = sanitize_text(notes or "") or None

    def _resolve(cursor):
        dispute = db.get_dispute(dispute_id, cursor)
        if not dispute:
            raise DisputeNotFound()
        if dispute.status in CLOSED_DISPUTE_STATUSES:
            raise DisputeAlreadyClosed()

        expected_status = dispute.status
        dispute.status = DISPUTE_ACTIONS[action]
        if action_taken:
            dispute.action_taken = action_taken
        if notes:
            dispute.admin_notes = f"{dispute.admin_notes}\n{notes}" if dispute.admin_notes else notes
        if dispute.status in CLOSED_DISPUTE_STATUSES:
            dispute.resolved_by = admin_id
            dispute.resolved_at = datetime.utcnow()
        db.update_dispute_review(cursor, dispute, expected_status)

        if action_taken in FLAGGING_ACTIONS:
            user = db.get_user(dispute.user_id, cursor)
            if not user:
                raise UserNotFound()
            user.flagged = True
            user.flag_reason = f"Dispute #{dispute_id}: {action_taken.value}"
            user.flagged_at = datetime.utcnow()
            if action_taken == ActionTaken.PERMANENT_BAN:
                user.is_banned = True
                user.ban_reason = notes or f"Dispute #{dispute_id}"
            db.update_user_moderation(cursor, user)
        return dispute

    dispute = db.atomic(_resolve, label="resolve dispute")
    logger.info(
        f"[DISPUTE] #{dispute_id} {action} by admin {admin_id} -> {dispute.status.value}"
        + (f" ({action_taken.value})" if action_taken else "")
    )

    AdminActionLog(db).record(
        admin_id,
        dispute_action(action),
        "dispute",
        dispute_id,
        {
            "user_id": dispute.user_id,
            "match_id": dispute.match_id,
            "status": dispute.status.value,
            "action_taken": dispute.action_taken.value,
            "notes": notes,
        },
    )
    if action_taken in FLAGGING_ACTIONS:
        dispatch(notifier, [Notification(dispute.user_id, ADMIN_ACTION, 0, f"dispute-{dispute_id}")])
    return dispute
