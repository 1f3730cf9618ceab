"""
Escrow: stakes move from player balances into a match pot.

Each stake is one transaction holding the balance debit, its escrow-debit
entry, the pot-side escrow-credit entry and the match write. The join is a
conditional update on (status=waiting, version), so two players racing for
the same seat cannot both get in.
"""
import logging

from database import Database, Match, MatchStatus, EntryKind
from errors import (
    InvalidEntryFee,
    ValidationError,
    SelfJoin,
    MatchNotJoinable,
    UserNotFound,
    AccountBanned,
)
from ledger import post_debit, post_platform
from notifications import Notification, MATCH_JOINED, dispatch
from platform_config import MIN_ENTRY_FEE, MAX_ENTRY_FEE, platform_cut_for
from utils import is_valid_entry_fee, is_valid_room_code
from .state import new_match_id, load_match

logger = logging.getLogger(__name__)


def _load_player(db: Database, cursor, player_id: int):
    player = db.get_user(player_id, cursor)
    if not player:
        raise UserNotFound()
    if player.is_banned:
        raise AccountBanned()
    return player


def _escrow_stake(db: Database, cursor, match: Match, player_id: int):
    """Debit one stake and record it entering the pot."""
    post_debit(
        db, cursor, player_id, EntryKind.ESCROW_DEBIT, match.entry_fee,
        match_id=match.match_id, description=f"Stake for match {match.match_id}",
    )
    post_platform(
        db, cursor, EntryKind.ESCROW_CREDIT, match.entry_fee,
        match_id=match.match_id, description=f"Stake from user {player_id} held in pot",
    )


def create_match(db: Database, player_id: int, entry_fee: int, room_code: str) -> Match:
    """Open a match and escrow the creator's stake.

    Args:
        db: Database instance
        player_id: Creator
        entry_fee: Stake per player, whole coins
        room_code: In-game room the players meet in

    Returns:
        The new Match in waiting

    Raises:
        InvalidEntryFee, InsufficientBalance, AccountBanned, UserNotFound
    """
    valid, error = is_valid_entry_fee(entry_fee, MIN_ENTRY_FEE, MAX_ENTRY_FEE)
    if not valid:
        raise InvalidEntryFee(error)
    valid, error = is_valid_room_code(room_code)
    if not valid:
        raise ValidationError(error)

    pot = entry_fee * 2

    def _create(cursor):
        _load_player(db, cursor, player_id)
        match = Match(
            match_id=new_match_id(),
            player1_id=player_id,
            entry_fee=entry_fee,
            pot=pot,
            platform_cut=platform_cut_for(pot),
            room_code=room_code,
        )
        db.insert_match(cursor, match)
        _escrow_stake(db, cursor, match, player_id)
        return match

    match = db.atomic(_create, label="create match")
    logger.info(f"[ESCROW] Match {match.match_id} created by user {player_id} | fee={entry_fee} pot={pot}")
    return match


def join_match(db: Database, match_id: str, player_id: int, notifier=None) -> Match:
    """Take the open seat in a waiting match and escrow the second stake.

    Raises:
        MatchNotJoinable, SelfJoin, InsufficientBalance, AccountBanned,
        MatchNotFound, UserNotFound
    """

    def _join(cursor):
        match = load_match(db, cursor, match_id)
        if match.status != MatchStatus.WAITING or match.player2_id is not None:
            raise MatchNotJoinable()
        if player_id == match.player1_id:
            raise SelfJoin()
        _load_player(db, cursor, player_id)

        expected_version = match.version
        match.player2_id = player_id
        match.status = MatchStatus.IN_PROGRESS
        db.compare_and_set_match(cursor, match, MatchStatus.WAITING, expected_version)

        _escrow_stake(db, cursor, match, player_id)
        return match

    match = db.atomic(_join, label="join match")
    logger.info(f"[ESCROW] User {player_id} joined match {match_id} | pot={match.pot}")

    dispatch(notifier, [
        Notification(match.player1_id, MATCH_JOINED, match.pot, match.match_id),
        Notification(match.player2_id, MATCH_JOINED, match.pot, match.match_id),
    ])
    return match
