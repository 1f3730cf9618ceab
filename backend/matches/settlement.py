"""
Settlement: pay the winner, keep the platform cut, reward the referrer.

The state transition out of in-progress/conflict is the lock. It is written
first, as a conditional update, and the payout effects follow on the same
cursor in a fixed order. Any failure rolls back all of it.
"""
import logging
from datetime import datetime
from typing import List, Optional

from database import Database, Match, MatchStatus, MatchResult, EntryKind, EntryDirection, SETTLEABLE_STATUSES
from errors import MatchNotActive, InvalidWinner
from ledger import post_credit, post_platform
from notifications import Notification, MATCH_WON, MATCH_LOST, REFERRAL_REWARD, dispatch
from platform_config import referral_reward_for
from .state import load_match, ensure_not_terminal

logger = logging.getLogger(__name__)


def apply_settlement(
    db: Database,
    cursor,
    match: Match,
    winner_id: int,
    now: Optional[datetime] = None,
) -> List[Notification]:
    """Settle `match` (already read on `cursor`) in favour of winner_id.

    Effects, in order:
        1. match completed with winner and per-player results
        2. winnings (pot - platform cut) credited to the winner
        3. platform-fee entry for the cut
        4. referral reward to the winner's direct referrer, if any, funded
           by a matching platform-side debit

    Returns the notifications to send once the transaction commits.
    """
    ensure_not_terminal(match)
    if match.status not in SETTLEABLE_STATUSES:
        raise MatchNotActive("Match needs two players before it can be settled")
    if winner_id not in (match.player1_id, match.player2_id) or match.player2_id is None:
        raise InvalidWinner()

    loser_id = match.opponent_of(winner_id)
    expected_status, expected_version = match.status, match.version

    match.winner_id = winner_id
    if winner_id == match.player1_id:
        match.player1_result, match.player2_result = MatchResult.WIN, MatchResult.LOSS
    else:
        match.player1_result, match.player2_result = MatchResult.LOSS, MatchResult.WIN
    match.status = MatchStatus.COMPLETED
    match.completed_at = now or datetime.utcnow()
    db.compare_and_set_match(cursor, match, expected_status, expected_version)

    notifications = []

    post_credit(
        db, cursor, winner_id, EntryKind.WINNINGS, match.winnings,
        match_id=match.match_id, description=f"Won match {match.match_id}",
    )
    notifications.append(Notification(winner_id, MATCH_WON, match.winnings, match.match_id))
    notifications.append(Notification(loser_id, MATCH_LOST, 0, match.match_id))

    # A cut of 0 (pot of 2..9 coins) has nothing to record
    if match.platform_cut > 0:
        post_platform(
            db, cursor, EntryKind.PLATFORM_FEE, match.platform_cut,
            match_id=match.match_id, description=f"Platform cut for match {match.match_id}",
        )

    winner = db.get_user(winner_id, cursor)
    reward = referral_reward_for(match.pot)
    if winner.referred_by and reward > 0:
        post_credit(
            db, cursor, winner.referred_by, EntryKind.REFERRAL_REWARD, reward,
            match_id=match.match_id, description=f"Referral reward: user {winner_id} won {match.match_id}",
        )
        post_platform(
            db, cursor, EntryKind.REFERRAL_REWARD, reward,
            match_id=match.match_id, description=f"Referral reward paid to user {winner.referred_by}",
            direction=EntryDirection.DEBIT,
        )
        notifications.append(Notification(winner.referred_by, REFERRAL_REWARD, reward, match.match_id))

    logger.info(
        f"[SETTLE] Match {match.match_id} won by user {winner_id} | paid={match.winnings} "
        f"cut={match.platform_cut}"
        + (f" referral={reward}->user {winner.referred_by}" if winner.referred_by and reward > 0 else "")
    )
    return notifications


def settle(db: Database, match_id: str, winner_id: int, notifier=None) -> Match:
    """Settle a match for winner_id as its own unit of work.

    A second call on the same match raises AlreadySettled and moves nothing.
    """
    result = {}

    def _settle(cursor):
        match = load_match(db, cursor, match_id)
        result["notifications"] = apply_settlement(db, cursor, match, winner_id)
        return match

    match = db.atomic(_settle, label="settle match")
    dispatch(notifier, result["notifications"])
    return match
