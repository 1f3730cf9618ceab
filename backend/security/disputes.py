"""
Dispute tracking and risk scoring.

Dispute entries are an append-only record of conflicting or suspicious
events. They are kept for pattern detection across users and time and are
never edited to undo history: only their review status moves forward.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, List

from database import (
    Database,
    DisputeEntry,
    DisputeType,
    DisputeSeverity,
    DisputeStatus,
    CancelReason,
)

logger = logging.getLogger(__name__)

BASE_RISK = {
    DisputeType.CONFLICT: 15,
    DisputeType.CANCEL_REQUEST: 10,
    DisputeType.REPEATED_DISPUTE: 25,
    DisputeType.SUSPICIOUS_BEHAVIOR: 30,
    DisputeType.FAKE_PROOF: 40,
    DisputeType.PAYMENT_DISPUTE: 20,
}

SEVERITY_MULTIPLIER = {
    DisputeSeverity.LOW: 1.0,
    DisputeSeverity.MEDIUM: 1.5,
    DisputeSeverity.HIGH: 2.0,
    DisputeSeverity.CRITICAL: 3.0,
}

CANCEL_REASON_SEVERITY = {
    CancelReason.UNFAIR_PLAY: DisputeSeverity.HIGH,
    CancelReason.OPPONENT_NOT_RESPONDING: DisputeSeverity.MEDIUM,
    CancelReason.OTHER: DisputeSeverity.MEDIUM,
    CancelReason.TECHNICAL_ISSUES: DisputeSeverity.LOW,
    CancelReason.GAME_CRASHED: DisputeSeverity.LOW,
    CancelReason.WRONG_MATCH_JOINED: DisputeSeverity.LOW,
    CancelReason.PERSONAL_EMERGENCY: DisputeSeverity.LOW,
}

MAX_RISK_SCORE = 100
AUTO_FLAG_SCORE = 60
AUTO_FLAG_WEEKLY_DISPUTES = 5
USER_FLAG_SCORE = 80


def severity_for_cancel_reason(reason: CancelReason) -> DisputeSeverity:
    return CANCEL_REASON_SEVERITY.get(reason, DisputeSeverity.MEDIUM)


def calculate_risk_score(
    dispute_type: DisputeType,
    severity: DisputeSeverity,
    disputes_this_week: int,
    disputes_this_month: int,
    total_disputes: int,
) -> int:
    """Risk score 0-100 for a new dispute.

    The history counts include the dispute being scored.
    """
    score = BASE_RISK.get(dispute_type, 10)

    if disputes_this_week > 3:
        score += 20
    if disputes_this_month > 10:
        score += 30
    if total_disputes > 20:
        score += 25

    # Half-up rounding: medium conflict is 22.5 -> 23
    score = int(score * SEVERITY_MULTIPLIER[severity] + 0.5)
    return min(score, MAX_RISK_SCORE)


def record_dispute(
    db: Database,
    user_id: int,
    dispute_type: DisputeType,
    description: str,
    severity: DisputeSeverity = DisputeSeverity.MEDIUM,
    match_id: Optional[str] = None,
    evidence: Optional[dict] = None,
) -> DisputeEntry:
    """Record a dispute entry, scoring it against the user's history.

    High-scoring disputes are auto-flagged for review, and the user account
    itself is flagged when the score passes USER_FLAG_SCORE.
    """
    now = datetime.utcnow()
    dispute = DisputeEntry(
        dispute_id=None,
        user_id=user_id,
        dispute_type=dispute_type,
        description=description,
        severity=severity,
        match_id=match_id,
        evidence=evidence or {},
        created_at=now,
    )

    def _record(cursor):
        # +1: the dispute being recorded counts toward its own history
        this_week = db.count_user_disputes_since(cursor, user_id, now - timedelta(days=7)) + 1
        this_month = db.count_user_disputes_since(cursor, user_id, now - timedelta(days=30)) + 1
        total = db.count_user_disputes_since(cursor, user_id) + 1

        dispute.risk_score = calculate_risk_score(dispute_type, severity, this_week, this_month, total)
        dispute.auto_flagged = (
            dispute.risk_score > AUTO_FLAG_SCORE or this_week > AUTO_FLAG_WEEKLY_DISPUTES
        )
        db.insert_dispute(cursor, dispute)

        if dispute.risk_score > USER_FLAG_SCORE:
            user = db.get_user(user_id, cursor)
            if user and not user.flagged:
                user.flagged = True
                user.flag_reason = f"High risk dispute #{dispute.dispute_id} (score {dispute.risk_score})"
                user.flagged_at = now
                db.update_user_moderation(cursor, user)
                logger.warning(f"[DISPUTE] User {user_id} flagged: {user.flag_reason}")

    db.atomic(_record, label="record dispute")

    logger.info(
        f"[DISPUTE] #{dispute.dispute_id} {dispute_type.value} user={user_id} match={match_id} "
        f"severity={severity.value} risk={dispute.risk_score}"
        + (" AUTO-FLAGGED" if dispute.auto_flagged else "")
    )
    return dispute


def try_record_dispute(db: Database, **kwargs) -> Optional[DisputeEntry]:
    """record_dispute for use after a financial effect has committed.

    Audit is best-effort relative to money movement: a failure here is logged
    and swallowed so it cannot make a committed settlement look failed.
    """
    try:
        return record_dispute(db, **kwargs)
    except Exception as e:
        logger.error(
            f"[DISPUTE] Failed to record dispute for user {kwargs.get('user_id')} "
            f"match {kwargs.get('match_id')}: {e}",
            exc_info=True,
        )
        return None


def list_disputes(
    db: Database,
    status: Optional[DisputeStatus] = None,
    severity: Optional[DisputeSeverity] = None,
    dispute_type: Optional[DisputeType] = None,
    min_risk: int = 0,
    limit: int = 50,
    match_id: Optional[str] = None,
) -> List[DisputeEntry]:
    """Disputes ordered by risk score, then recency."""
    return db.list_disputes(
        status=status,
        severity=severity,
        dispute_type=dispute_type,
        match_id=match_id,
        min_risk=min_risk,
        limit=limit,
    )


def dispute_statistics(db: Database) -> dict:
    return db.dispute_statistics()
