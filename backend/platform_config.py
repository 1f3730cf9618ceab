"""
Coinduel platform configuration.

Economics, reaper timing and storage settings. Every value can be
overridden through the environment (.env is loaded on import).
"""
import os

from dotenv import load_dotenv

load_dotenv()

# =============================================================================
# ECONOMICS
# =============================================================================
#
# All amounts are whole coins. Percentages are applied with integer floor
# division so a pot of 105 yields a cut of 10, never 10.5.
#

PLATFORM_CUT_PERCENT = int(os.getenv("PLATFORM_CUT_PERCENT", "10"))   # of the pot, kept on settlement
REFERRAL_REWARD_PERCENT = int(os.getenv("REFERRAL_REWARD_PERCENT", "1"))  # of the pot, paid to winner's referrer
MIN_ENTRY_FEE = int(os.getenv("MIN_ENTRY_FEE", "1"))

# Upper bounds keep every stored amount and balance inside SQLite's signed
# 64-bit INTEGER. A pot is 2 * MAX_ENTRY_FEE.
SQLITE_MAX_INTEGER = 2 ** 63 - 1
MAX_ENTRY_FEE = min(int(os.getenv("MAX_ENTRY_FEE", "1000000000")), SQLITE_MAX_INTEGER // 4)
MAX_TRANSFER_AMOUNT = min(int(os.getenv("MAX_TRANSFER_AMOUNT", "1000000000000")), SQLITE_MAX_INTEGER // 4)
MIN_WITHDRAWAL = int(os.getenv("MIN_WITHDRAWAL", "10"))

# =============================================================================
# IDLE REAPER
# =============================================================================

IDLE_THRESHOLD_MINUTES = int(os.getenv("IDLE_THRESHOLD_MINUTES", "90"))
REAPER_INTERVAL_SECONDS = int(os.getenv("REAPER_INTERVAL_SECONDS", "300"))

# =============================================================================
# STORAGE
# =============================================================================

DB_PATH = os.getenv("DB_PATH", "coinduel.db")
DB_LOCK_TIMEOUT_SECONDS = float(os.getenv("DB_LOCK_TIMEOUT_SECONDS", "5"))
MAX_TRANSACTION_RETRIES = int(os.getenv("MAX_TRANSACTION_RETRIES", "3"))
EVIDENCE_DIR = os.getenv("EVIDENCE_DIR", "./evidence")

# =============================================================================
# COLLABORATORS
# =============================================================================

BOT_TOKEN = os.getenv("BOT_TOKEN")  # Telegram notifications are disabled when unset
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


def platform_cut_for(pot: int) -> int:
    """Platform commission for a pot, rounded down."""
    return pot * PLATFORM_CUT_PERCENT // 100


def referral_reward_for(pot: int) -> int:
    """Referrer's share of a pot, rounded down."""
    return pot * REFERRAL_REWARD_PERCENT // 100
