"""
Formatting utilities for display.
"""
from datetime import datetime
from typing import Optional


def format_coins(amount: int) -> str:
    """Format a coin amount for display."""
    unit = "coin" if abs(amount) == 1 else "coins"
    return f"{amount:,} {unit}"


def format_signed_coins(amount: int) -> str:
    """Format a ledger effect, e.g. '+90 coins' or '-50 coins'."""
    sign = "+" if amount >= 0 else "-"
    return f"{sign}{format_coins(abs(amount))}"


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format timestamp for display."""
    if not dt:
        return "N/A"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_duration_minutes(minutes: float) -> str:
    """Format an idle time such as 95 minutes as '1h 35m'."""
    minutes = int(minutes)
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60:02d}m"


def truncate_id(value: str, length: int = 14) -> str:
    """Truncate long identifiers for table display."""
    if len(value) <= length:
        return value
    return f"{value[:length - 3]}..."
