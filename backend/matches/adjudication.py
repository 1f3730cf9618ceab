"""
Result adjudication.

Each player reports their own result. The second submission decides the
match: one win and one loss settles it, anything else puts it in conflict
for an admin. The submission and its consequence are one conditional update
on the match, so the "both submitted" check runs exactly once.
"""
import logging
from typing import Optional, Union

from database import (
    Database,
    Match,
    MatchStatus,
    MatchResult,
    DisputeType,
    DisputeSeverity,
)
from errors import InvalidResult, MissingEvidence, MatchNotActive, DuplicateSubmission, NotParticipant
from notifications import Notification, MATCH_CONFLICT, dispatch
from security import try_record_dispute
from .settlement import apply_settlement
from .state import load_match

logger = logging.getLogger(__name__)


def _parse_result(result: Union[MatchResult, str]) -> MatchResult:
    if isinstance(result, MatchResult):
        return result
    try:
        return MatchResult(str(result).lower())
    except ValueError:
        raise InvalidResult()


def submit_result(
    db: Database,
    match_id: str,
    player_id: int,
    result: Union[MatchResult, str],
    evidence: Optional[str] = None,
    notifier=None,
) -> Match:
    """Record a player's self-reported result.

    Args:
        db: Database instance
        match_id: Match ID
        player_id: Reporting player
        result: win or loss
        evidence: Evidence store reference; required for a win

    Returns:
        The match after the submission (in-progress, completed or conflict)

    Raises:
        InvalidResult, MissingEvidence, NotParticipant, MatchNotActive,
        DuplicateSubmission, MatchNotFound
    """
    result = _parse_result(result)
    evidence = evidence or None
    if result == MatchResult.WIN and not evidence:
        raise MissingEvidence()

    outcome = {"notifications": [], "conflict": False}

    def _submit(cursor):
        match = load_match(db, cursor, match_id)
        if not match.is_participant(player_id):
            raise NotParticipant()
        if match.status != MatchStatus.IN_PROGRESS:
            raise MatchNotActive()
        if match.result_of(player_id) is not None:
            raise DuplicateSubmission()

        outcome["notifications"] = []
        outcome["conflict"] = False

        if player_id == match.player1_id:
            match.player1_result, match.player1_evidence = result, evidence
        else:
            match.player2_result, match.player2_evidence = result, evidence

        other_result = match.result_of(match.opponent_of(player_id))
        if other_result is None:
            db.compare_and_set_match(cursor, match, MatchStatus.IN_PROGRESS, match.version)
            return match

        if {match.player1_result, match.player2_result} == {MatchResult.WIN, MatchResult.LOSS}:
            winner_id = match.player1_id if match.player1_result == MatchResult.WIN else match.player2_id
            outcome["notifications"] = apply_settlement(db, cursor, match, winner_id)
            return match

        match.status = MatchStatus.CONFLICT
        db.compare_and_set_match(cursor, match, MatchStatus.IN_PROGRESS, match.version)
        outcome["conflict"] = True
        outcome["notifications"] = [
            Notification(pid, MATCH_CONFLICT, 0, match.match_id) for pid in match.players()
        ]
        return match

    match = db.atomic(_submit, label="submit result")
    logger.info(f"[RESULT] User {player_id} reported {result.value} for match {match_id} -> {match.status.value}")

    if outcome["conflict"]:
        logger.warning(
            f"[RESULT] Match {match_id} in conflict: "
            f"p1={match.player1_result.value} p2={match.player2_result.value}"
        )
        _record_conflict_disputes(db, match)

    dispatch(notifier, outcome["notifications"])
    return match


def _record_conflict_disputes(db: Database, match: Match):
    """One dispute entry per player, each with both claims and evidence."""
    sides = (
        (match.player1_id, match.player1_result, match.player1_evidence,
         match.player2_id, match.player2_result, match.player2_evidence),
        (match.player2_id, match.player2_result, match.player2_evidence,
         match.player1_id, match.player1_result, match.player1_evidence),
    )
    for user_id, claimed, own_evidence, opponent_id, opponent_claimed, opponent_evidence in sides:
        try_record_dispute(
            db,
            user_id=user_id,
            dispute_type=DisputeType.CONFLICT,
            description=(
                f"Result conflict in match {match.match_id}: claimed {claimed.value}, "
                f"opponent claimed {opponent_claimed.value}"
            ),
            severity=DisputeSeverity.MEDIUM,
            match_id=match.match_id,
            evidence={
                "claimed_result": claimed.value,
                "opponent_id": opponent_id,
                "opponent_result": opponent_claimed.value,
                "evidence": own_evidence,
                "opponent_evidence": opponent_evidence,
            },
        )
