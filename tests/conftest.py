"""
Shared fixtures for the Coinduel test suite.

Every test gets its own file-backed SQLite database so transactions, locks
and threads behave the way they do in production.
"""
import os
import tempfile

# Settle configuration before any backend module reads it
_TEST_DIR = tempfile.mkdtemp(prefix="coinduel-tests-")
os.environ["DB_PATH"] = os.path.join(_TEST_DIR, "import.db")
os.environ["EVIDENCE_DIR"] = os.path.join(_TEST_DIR, "evidence")
os.environ["BOT_TOKEN"] = ""

import pytest

from database import Database
from ledger import adjust_balance
from notifications import LoggingNotifier
from referrals import register_account

ADMIN_ID = 9000
STARTING_BALANCE = 1000


def fund(db: Database, user_id: int, amount: int):
    adjust_balance(db, ADMIN_ID, user_id, amount, "credit", "test deposit")


def make_player(db: Database, username: str, balance: int = STARTING_BALANCE, referral_code: str = None):
    user = register_account(db, username, referral_code=referral_code)
    if balance:
        fund(db, user.user_id, balance)
    return db.get_user(user.user_id)


def balance_of(db: Database, user_id: int) -> int:
    return db.get_user(user_id).balance


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "coinduel.db"))


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def alice(db):
    return make_player(db, "alice")


@pytest.fixture
def bob(db):
    return make_player(db, "bob")


@pytest.fixture
def carol(db):
    return make_player(db, "carol")


@pytest.fixture
def live_match(db, alice, bob):
    """alice vs bob, 50 coins each, in progress."""
    from matches import create_match, join_match

    match = create_match(db, alice.user_id, 50, "ROOM-1")
    return join_match(db, match.match_id, bob.user_id)


@pytest.fixture
def conflict_match(db, live_match, alice, bob):
    """alice vs bob where both claimed the win."""
    from matches import submit_result

    submit_result(db, live_match.match_id, alice.user_id, "win", "evidence/alice.png")
    return submit_result(db, live_match.match_id, bob.user_id, "win", "evidence/bob.png")
