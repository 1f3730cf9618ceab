"""
Input validation utilities.
"""
import re
from typing import Optional, Tuple

USERNAME_PATTERN = re.compile(r"^[a-z0-9_]{3,24}$")
ROOM_CODE_PATTERN = re.compile(r"^[A-Za-z0-9\-]{4,32}$")
REFERRAL_CODE_PATTERN = re.compile(r"^[A-HJ-NP-Z2-9]{8}$")


def is_valid_username(username: str) -> Tuple[bool, str]:
    """Validate username format.

    Args:
        username: Lower-cased username

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not username:
        return False, "Username is required"

    if not USERNAME_PATTERN.match(username):
        return False, "Username must be 3-24 characters: letters, numbers or underscores"

    return True, ""


def is_valid_entry_fee(entry_fee, min_fee: int = 1, max_fee: Optional[int] = None) -> Tuple[bool, str]:
    """Validate a match entry fee.

    Entry fees are whole coins. Booleans and floats are rejected even
    when they look like integers.
    """
    if isinstance(entry_fee, bool) or not isinstance(entry_fee, int):
        return False, "Entry fee must be a whole number of coins"

    if entry_fee < min_fee:
        return False, f"Entry fee must be at least {min_fee} coin{'s' if min_fee != 1 else ''}"

    if max_fee is not None and entry_fee > max_fee:
        return False, f"Entry fee cannot exceed {max_fee:,} coins"

    return True, ""


def is_valid_amount(amount, max_amount: Optional[int] = None, min_amount: int = 1) -> Tuple[bool, str]:
    """Validate a coin amount for a deposit, withdrawal or adjustment."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        return False, "Amount must be a whole number of coins"

    if amount < min_amount:
        return False, f"Amount must be at least {min_amount} coin{'s' if min_amount != 1 else ''}"

    if max_amount is not None and amount > max_amount:
        return False, f"Amount cannot exceed {max_amount:,} coins"

    return True, ""


def is_valid_room_code(room_code: str) -> Tuple[bool, str]:
    """Validate the in-game room code players use to meet."""
    if not room_code:
        return False, "Room code is required"

    if not ROOM_CODE_PATTERN.match(room_code):
        return False, "Room code must be 4-32 letters, digits or dashes"

    return True, ""


def is_valid_referral_code(code: str) -> Tuple[bool, str]:
    """Validate referral code format.

    Args:
        code: Referral code to validate (e.g., "K7PQ2MZX")

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not code:
        return False, "Referral code is required"

    if not REFERRAL_CODE_PATTERN.match(code.upper()):
        return False, "Invalid referral code format"

    return True, ""


def sanitize_text(text: str, max_length: int = 500) -> str:
    """Sanitize free text (notes, reasons) for safe storage.

    Args:
        text: Text to sanitize
        max_length: Maximum length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    # Remove control characters except newlines and trim
    sanitized = ''.join(c for c in text if c.isprintable() or c == "\n")
    sanitized = sanitized.strip()

    # Truncate to max length
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized
