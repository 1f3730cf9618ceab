"""
Player accounts and referral edges.

A referrer is attached only when the account is created and is never changed
afterwards. On every settlement the winner's direct referrer earns
REFERRAL_REWARD_PERCENT of the pot; there is no multi-level cascade.
"""
import logging
import secrets
import sqlite3
from typing import Optional

from database import Database, User, EntryKind
from errors import ValidationError, UserNotFound
from platform_config import referral_reward_for
from utils import is_valid_username, is_valid_referral_code

logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # Exclude confusing chars (0, O, 1, I)
REFERRAL_CODE_LENGTH = 8

__all__ = [
    "generate_referral_code",
    "register_account",
    "referral_reward_for",
    "get_referral_stats",
]


def generate_referral_code() -> str:
    """Generate a random referral code."""
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def register_account(
    db: Database,
    username: str,
    referral_code: Optional[str] = None,
    telegram_id: Optional[int] = None,
    is_admin: bool = False,
) -> User:
    """Create a player account with a zero balance.

    Args:
        db: Database instance
        username: Unique username (case-insensitive)
        referral_code: Code of the referring player, if any
        telegram_id: Telegram chat to notify, if linked
        is_admin: Grant admin rights

    Returns:
        The created User
    """
    username = (username or "").strip().lower()
    valid, error = is_valid_username(username)
    if not valid:
        raise ValidationError(error)

    if referral_code:
        valid, error = is_valid_referral_code(referral_code)
        if not valid:
            raise ValidationError(error)

    def _register(cursor):
        if cursor.execute("SELECT 1 FROM users WHERE username = ?", (username,)).fetchone():
            raise ValidationError("Username already taken")

        referred_by = None
        if referral_code:
            referrer = db.get_user_by_referral_code(referral_code, cursor)
            if not referrer:
                raise UserNotFound("Referral code not found")
            referred_by = referrer.user_id

        code = generate_referral_code()
        while db.referral_code_exists(code, cursor):
            code = generate_referral_code()

        user = User(
            user_id=None,
            username=username,
            telegram_id=telegram_id,
            referral_code=code,
            referred_by=referred_by,
            is_admin=is_admin,
        )
        db.insert_user(cursor, user)
        return user

    try:
        user = db.atomic(_register, label="register account")
    except sqlite3.IntegrityError:
        # Lost a race on the unique username
        raise ValidationError("Username already taken")

    if user.referred_by:
        logger.info(f"[REFERRAL] New user {user.user_id} ({username}) referred by {user.referred_by}")
    else:
        logger.info(f"New user {user.user_id} ({username}) registered")
    return user


def get_referral_stats(db: Database, user_id: int) -> dict:
    """Referral code, referred players and lifetime referral earnings."""
    user = db.get_user(user_id)
    if not user:
        raise UserNotFound()

    referred = db.get_referred_users(user_id)
    rewards = db.get_ledger_entries(user_id=user_id, kind=EntryKind.REFERRAL_REWARD, limit=1_000_000)

    return {
        "referral_code": user.referral_code,
        "referred_by": user.referred_by,
        "total_referrals": len(referred),
        "referred_usernames": [u.username for u in referred],
        "rewards_count": len(rewards),
        "lifetime_earnings": sum(entry.amount for entry in rewards),
    }
