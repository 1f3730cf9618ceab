"""
Idle match reaper.

Matches still in waiting or in-progress once they are older than the idle
threshold (measured from creation) are refunded and marked abandoned. Each
match is re-checked inside its own transaction, so a settlement or cancel
that lands first wins and the reaper skips that match. Conflict matches are
left for an admin.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from database import Database, Match, MatchStatus, IDLE_CANDIDATE_STATUSES
from errors import MatchError
from notifications import dispatch
from platform_config import IDLE_THRESHOLD_MINUTES, REAPER_INTERVAL_SECONDS
from security import AdminActionLog, SYSTEM_ACTOR_ID
from security.audit import IDLE_REAP
from .refunds import apply_refund
from .state import load_match

logger = logging.getLogger(__name__)


@dataclass
class ReapedMatch:
    match_id: str
    room_code: str
    refunded_players: Tuple[int, ...]
    entry_fee: int
    idle_minutes: int


def _idle_minutes(match: Match, now: datetime) -> int:
    return int((now - match.created_at).total_seconds() // 60)


def list_idle_matches(
    db: Database,
    threshold_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[Tuple[Match, int]]:
    """Preview: (match, idle minutes) for every match the reaper would take."""
    threshold = IDLE_THRESHOLD_MINUTES if threshold_minutes is None else threshold_minutes
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=threshold)
    return [(m, _idle_minutes(m, now)) for m in db.find_idle_matches(IDLE_CANDIDATE_STATUSES, cutoff)]


def reap_idle_matches(
    db: Database,
    threshold_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
    notifier=None,
) -> List[ReapedMatch]:
    """Refund and abandon every match idle for longer than the threshold.

    Args:
        db: Database instance
        threshold_minutes: Idle threshold (default IDLE_THRESHOLD_MINUTES)
        now: Reference time (default utcnow)

    Returns:
        The matches this sweep abandoned
    """
    threshold = IDLE_THRESHOLD_MINUTES if threshold_minutes is None else threshold_minutes
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=threshold)
    audit = AdminActionLog(db)
    reaped = []

    for candidate in db.find_idle_matches(IDLE_CANDIDATE_STATUSES, cutoff):
        outcome = {}

        def _reap(cursor, match_id=candidate.match_id):
            match = load_match(db, cursor, match_id)
            # Settled, cancelled or sent to conflict since the scan
            if match.status not in IDLE_CANDIDATE_STATUSES or match.created_at >= cutoff:
                return None
            idle = _idle_minutes(match, now)
            outcome["notifications"] = apply_refund(
                db, cursor, match, MatchStatus.ABANDONED,
                reason=f"Not finished {idle} minutes after creation", now=now,
            )
            return ReapedMatch(
                match_id=match.match_id,
                room_code=match.room_code,
                refunded_players=match.players(),
                entry_fee=match.entry_fee,
                idle_minutes=idle,
            )

        try:
            result = db.atomic(_reap, label=f"reap {candidate.match_id}")
        except MatchError as e:
            logger.warning(f"[REAPER] Skipped match {candidate.match_id}: {e.message}")
            continue

        if result is None:
            logger.info(f"[REAPER] Match {candidate.match_id} changed state since scan, skipped")
            continue

        reaped.append(result)
        logger.info(
            f"[REAPER] Abandoned match {result.match_id} after {result.idle_minutes} idle minutes, "
            f"refunded {result.entry_fee} to {list(result.refunded_players)}"
        )
        audit.record(
            SYSTEM_ACTOR_ID,
            IDLE_REAP,
            "match",
            result.match_id,
            {
                "idle_minutes": result.idle_minutes,
                "threshold_minutes": threshold,
                "refunded_players": list(result.refunded_players),
                "entry_fee": result.entry_fee,
            },
        )
        dispatch(notifier, outcome.get("notifications", []))

    if reaped:
        logger.info(f"[REAPER] Sweep abandoned {len(reaped)} match(es)")
    return reaped


async def reaper_loop(db: Database, interval_seconds: int = REAPER_INTERVAL_SECONDS, notifier=None):
    """Background task that sweeps idle matches periodically."""
    logger.info(f"Reaper loop started (interval: {interval_seconds}s, threshold: {IDLE_THRESHOLD_MINUTES}m)")

    while True:
        try:
            await asyncio.sleep(interval_seconds)
            reap_idle_matches(db, notifier=notifier)
        except asyncio.CancelledError:
            logger.info("Reaper loop cancelled")
            break
        except Exception as e:
            logger.error(f"Error in reaper loop: {e}", exc_info=True)
