"""Utility modules for Coinduel."""
from .formatting import (
    format_coins,
    format_signed_coins,
    format_timestamp,
    format_duration_minutes,
    truncate_id,
)
from .validation import (
    is_valid_username,
    is_valid_entry_fee,
    is_valid_amount,
    is_valid_room_code,
    is_valid_referral_code,
    sanitize_text,
)

__all__ = [
    "format_coins",
    "format_signed_coins",
    "format_timestamp",
    "format_duration_minutes",
    "truncate_id",
    "is_valid_username",
    "is_valid_entry_fee",
    "is_valid_amount",
    "is_valid_room_code",
    "is_valid_referral_code",
    "sanitize_text",
]
