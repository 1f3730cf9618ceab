"""
Database repository for Coinduel.
SQLite storage with explicit multi-record transactions.

Reads open their own short-lived connection. Anything that moves money or
changes match state runs through `Database.atomic`, which hands the callback
a cursor inside a single BEGIN EXCLUSIVE transaction.
"""
import json
import sqlite3
import logging
from contextlib import contextmanager
from typing import Optional, List, Callable, TypeVar
from datetime import datetime

from platform_config import DB_PATH, DB_LOCK_TIMEOUT_SECONDS, MAX_TRANSACTION_RETRIES, SQLITE_MAX_INTEGER
from errors import (
    ConcurrencyRetryError,
    StateConflictError,
    InsufficientBalance,
    UserNotFound,
    DuplicatePendingRequest,
    LedgerInvariantError,
    TransactionAlreadyReviewed,
)
from .models import (
    User,
    Match,
    MatchStatus,
    MatchResult,
    LedgerEntry,
    EntryKind,
    EntryStatus,
    EntryDirection,
    UserAccount,
    PLATFORM,
    CancelRequest,
    CancelReason,
    RequestStatus,
    DisputeEntry,
    DisputeType,
    DisputeSeverity,
    DisputeStatus,
    ActionTaken,
    AdminAction,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _ts(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO timestamp so string comparison in SQL orders correctly."""
    if dt is None:
        return None
    return dt.isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Database repository."""

    def __init__(
        self,
        db_path: str = DB_PATH,
        lock_timeout: float = DB_LOCK_TIMEOUT_SECONDS,
        max_retries: int = MAX_TRANSACTION_RETRIES,
    ):
        self.db_path = db_path
        self.lock_timeout = lock_timeout
        self.max_retries = max_retries
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly
        conn = sqlite3.connect(self.db_path, timeout=self.lock_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema."""
        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                user_id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT UNIQUE NOT NULL,
                telegram_id INTEGER,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                referral_code TEXT UNIQUE,
                referred_by INTEGER,
                is_admin INTEGER DEFAULT 0,
                flagged INTEGER DEFAULT 0,
                flag_reason TEXT,
                flagged_at TEXT,
                is_banned INTEGER DEFAULT 0,
                ban_reason TEXT,
                created_at TEXT,
                FOREIGN KEY (referred_by) REFERENCES users(user_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS matches (
                match_id TEXT PRIMARY KEY,
                player1_id INTEGER NOT NULL,
                player2_id INTEGER,
                entry_fee INTEGER NOT NULL CHECK (entry_fee >= 1),
                pot INTEGER NOT NULL,
                platform_cut INTEGER NOT NULL,
                room_code TEXT NOT NULL,
                status TEXT NOT NULL,
                player1_result TEXT,
                player2_result TEXT,
                player1_evidence TEXT,
                player2_evidence TEXT,
                winner_id INTEGER,
                abandon_reason TEXT,
                override_reason TEXT,
                overridden_by INTEGER,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT,
                updated_at TEXT,
                completed_at TEXT,
                FOREIGN KEY (player1_id) REFERENCES users(user_id),
                FOREIGN KEY (player2_id) REFERENCES users(user_id)
            )
        """)

        # Ledger entries: account_kind is 'user' (user_id set) or 'platform' (user_id NULL)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS ledger_entries (
                entry_id TEXT PRIMARY KEY,
                account_kind TEXT NOT NULL CHECK (account_kind IN ('user', 'platform')),
                user_id INTEGER,
                kind TEXT NOT NULL,
                direction TEXT NOT NULL,
                amount INTEGER NOT NULL CHECK (amount > 0),
                status TEXT NOT NULL,
                match_id TEXT,
                description TEXT,
                external_ref TEXT,
                reviewed_by INTEGER,
                review_note TEXT,
                reviewed_at TEXT,
                created_at TEXT,
                CHECK ((account_kind = 'user') = (user_id IS NOT NULL)),
                FOREIGN KEY (user_id) REFERENCES users(user_id),
                FOREIGN KEY (match_id) REFERENCES matches(match_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS cancel_requests (
                request_id TEXT PRIMARY KEY,
                match_id TEXT NOT NULL,
                requested_by INTEGER NOT NULL,
                reason TEXT NOT NULL,
                evidence TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                reviewed_by INTEGER,
                review_note TEXT,
                created_at TEXT,
                reviewed_at TEXT,
                FOREIGN KEY (match_id) REFERENCES matches(match_id),
                FOREIGN KEY (requested_by) REFERENCES users(user_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS disputes (
                dispute_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                dispute_type TEXT NOT NULL,
                match_id TEXT,
                description TEXT NOT NULL,
                severity TEXT NOT NULL,
                risk_score INTEGER NOT NULL DEFAULT 0,
                auto_flagged INTEGER DEFAULT 0,
                evidence TEXT,
                status TEXT NOT NULL DEFAULT 'open',
                action_taken TEXT NOT NULL DEFAULT 'none',
                admin_notes TEXT,
                resolved_by INTEGER,
                resolved_at TEXT,
                created_at TEXT,
                FOREIGN KEY (user_id) REFERENCES users(user_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS admin_actions (
                action_id INTEGER PRIMARY KEY AUTOINCREMENT,
                admin_id INTEGER NOT NULL,
                action TEXT NOT NULL,
                target_type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                details TEXT,
                timestamp TEXT NOT NULL
            )
        """)

        # At most one pending cancel request per match
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_cancel_requests_one_pending
            ON cancel_requests(match_id) WHERE status = 'pending'
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_matches_status ON matches(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_matches_player1 ON matches(player1_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_matches_player2 ON matches(player2_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger_entries(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_ledger_match ON ledger_entries(match_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_ledger_kind ON ledger_entries(kind)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_ledger_status ON ledger_entries(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_disputes_user ON disputes(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_disputes_status ON disputes(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_disputes_match ON disputes(match_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_admin_actions_target ON admin_actions(target_type, target_id)")

        conn.close()
        logger.info(f"Database initialized at {self.db_path}")

    # === Transactions ===

    @contextmanager
    def transaction(self):
        """Exclusive transaction. Commits on success, rolls back on any error."""
        conn = self._connect()
        cursor = conn.cursor()
        try:
            cursor.execute("BEGIN EXCLUSIVE")
            yield cursor
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def atomic(self, fn: Callable[[sqlite3.Cursor], T], label: str = "transaction") -> T:
        """Run fn(cursor) as one all-or-nothing unit of work.

        Lost races (ConcurrencyRetryError) and lock timeouts are retried up to
        max_retries times, then surfaced as StateConflictError. Any other error
        aborts the unit and propagates unchanged.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.transaction() as cursor:
                    return fn(cursor)
            except ConcurrencyRetryError as e:
                reason = e.message
            except sqlite3.OperationalError as e:
                message = str(e).lower()
                if "locked" not in message and "busy" not in message:
                    raise
                reason = str(e)

            if attempt >= self.max_retries:
                logger.warning(f"[DB] {label} gave up after {attempt} attempts: {reason}")
                raise StateConflictError(f"{label} conflicted with another update, please retry")
            logger.info(f"[DB] Retrying {label} ({attempt}/{self.max_retries}): {reason}")

    # === User Operations ===

    def insert_user(self, cursor: sqlite3.Cursor, user: User) -> int:
        """Insert a new user. Returns user_id."""
        cursor.execute("""
            INSERT INTO users (
                username, telegram_id, balance, referral_code, referred_by, is_admin,
                flagged, flag_reason, flagged_at, is_banned, ban_reason, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            user.username, user.telegram_id, user.balance, user.referral_code, user.referred_by, int(user.is_admin),
            int(user.flagged), user.flag_reason, _ts(user.flagged_at),
            int(user.is_banned), user.ban_reason, _ts(user.created_at),
        ))
        user.user_id = cursor.lastrowid
        return user.user_id

    def get_user(self, user_id: int, cursor: Optional[sqlite3.Cursor] = None) -> Optional[User]:
        """Get user by ID."""
        return self._fetch_one("SELECT * FROM users WHERE user_id = ?", (user_id,), self._row_to_user, cursor)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one("SELECT * FROM users WHERE username = ?", (username.lower(),), self._row_to_user)

    def get_user_by_referral_code(self, referral_code: str, cursor: Optional[sqlite3.Cursor] = None) -> Optional[User]:
        """Get user by their referral code."""
        return self._fetch_one(
            "SELECT * FROM users WHERE referral_code = ?", (referral_code.upper(),), self._row_to_user, cursor
        )

    def referral_code_exists(self, referral_code: str, cursor: Optional[sqlite3.Cursor] = None) -> bool:
        return self.get_user_by_referral_code(referral_code, cursor) is not None

    def update_user_moderation(self, cursor: sqlite3.Cursor, user: User):
        """Persist flag/ban fields. Balance and referral edge are never written here."""
        cursor.execute("""
            UPDATE users SET
                is_admin=?, flagged=?, flag_reason=?, flagged_at=?, is_banned=?, ban_reason=?
            WHERE user_id=?
        """, (
            int(user.is_admin), int(user.flagged), user.flag_reason, _ts(user.flagged_at),
            int(user.is_banned), user.ban_reason, user.user_id,
        ))

    def get_referred_users(self, referrer_id: int) -> List[User]:
        return self._fetch_all(
            "SELECT * FROM users WHERE referred_by = ? ORDER BY created_at DESC", (referrer_id,), self._row_to_user
        )

    def get_total_balances(self) -> int:
        conn = self._connect()
        total = conn.execute("SELECT COALESCE(SUM(balance), 0) FROM users").fetchone()[0]
        conn.close()
        return total

    def credit_balance(self, cursor: sqlite3.Cursor, user_id: int, amount: int):
        """Credit unless the new balance would leave the INTEGER range."""
        cursor.execute("""
            UPDATE users SET balance = balance + ?
            WHERE user_id = ? AND balance <= ?
        """, (amount, user_id, SQLITE_MAX_INTEGER - amount))
        if cursor.rowcount == 0:
            if self.get_user(user_id, cursor) is None:
                raise UserNotFound(f"User {user_id} not found")
            raise LedgerInvariantError(f"Crediting {amount} would overflow the balance of user {user_id}")

    def debit_balance(self, cursor: sqlite3.Cursor, user_id: int, amount: int):
        """Debit only if the balance covers it. Check and write are one statement."""
        cursor.execute("""
            UPDATE users SET balance = balance - ?
            WHERE user_id = ? AND balance >= ?
        """, (amount, user_id, amount))
        if cursor.rowcount == 0:
            if self.get_user(user_id, cursor) is None:
                raise UserNotFound(f"User {user_id} not found")
            raise InsufficientBalance()

    def _row_to_user(self, row: sqlite3.Row) -> User:
        """Convert database row to User object."""
        return User(
            user_id=row["user_id"],
            username=row["username"],
            telegram_id=row["telegram_id"],
            balance=row["balance"],
            referral_code=row["referral_code"],
            referred_by=row["referred_by"],
            is_admin=bool(row["is_admin"]),
            flagged=bool(row["flagged"]),
            flag_reason=row["flag_reason"],
            flagged_at=_dt(row["flagged_at"]),
            is_banned=bool(row["is_banned"]),
            ban_reason=row["ban_reason"],
            created_at=_dt(row["created_at"]) or datetime.utcnow(),
        )

    # === Ledger Operations ===

    # Entries whose effect is on the balance: approved ones, plus pending
    # debits (withdrawal reservations)
    _APPLIED = "(status = 'approved' OR (status = 'pending' AND direction = 'debit'))"

    def insert_ledger_entry(self, cursor: sqlite3.Cursor, entry: LedgerEntry):
        """Append a ledger entry. Entries are never updated except pending -> reviewed."""
        if isinstance(entry.account, UserAccount):
            account_kind, user_id = "user", entry.account.user_id
        else:
            account_kind, user_id = "platform", None

        cursor.execute("""
            INSERT INTO ledger_entries (
                entry_id, account_kind, user_id, kind, direction, amount,
                status, match_id, description, external_ref, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.entry_id, account_kind, user_id, entry.kind.value, entry.direction.value,
            entry.amount, entry.status.value, entry.match_id, entry.description,
            entry.external_ref, _ts(entry.created_at),
        ))

    def get_ledger_entry(self, entry_id: str, cursor: Optional[sqlite3.Cursor] = None) -> Optional[LedgerEntry]:
        return self._fetch_one(
            "SELECT * FROM ledger_entries WHERE entry_id = ?", (entry_id,), self._row_to_ledger_entry, cursor
        )

    def review_ledger_entry(self, cursor: sqlite3.Cursor, entry: LedgerEntry):
        """Write the review of a pending entry. Only a pending entry can be reviewed."""
        cursor.execute("""
            UPDATE ledger_entries SET
                status=?, reviewed_by=?, review_note=?, reviewed_at=?
            WHERE entry_id=? AND status='pending'
        """, (
            entry.status.value, entry.reviewed_by, entry.review_note, _ts(entry.reviewed_at), entry.entry_id,
        ))
        if cursor.rowcount == 0:
            raise TransactionAlreadyReviewed()

    def get_ledger_entries(
        self,
        user_id: Optional[int] = None,
        match_id: Optional[str] = None,
        kind: Optional[EntryKind] = None,
        status: Optional[EntryStatus] = None,
        limit: int = 100,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> List[LedgerEntry]:
        """Get ledger entries with optional filters, newest first."""
        query = "SELECT * FROM ledger_entries WHERE 1=1"
        params = []

        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if match_id:
            query += " AND match_id = ?"
            params.append(match_id)
        if kind:
            query += " AND kind = ?"
            params.append(kind.value)
        if status:
            query += " AND status = ?"
            params.append(status.value)

        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        return self._fetch_all(query, params, self._row_to_ledger_entry, cursor)

    def sum_user_entries(self, user_id: int) -> int:
        """Net signed effect of a user's applied entries on their balance."""
        conn = self._connect()
        total = conn.execute(f"""
            SELECT COALESCE(SUM(CASE WHEN direction = 'credit' THEN amount ELSE -amount END), 0)
            FROM ledger_entries
            WHERE account_kind = 'user' AND user_id = ? AND {self._APPLIED}
        """, (user_id,)).fetchone()[0]
        conn.close()
        return total

    def ledger_totals_by_kind(self, account_kind: str) -> dict:
        """Applied totals per entry kind for 'user' or 'platform' entries,
        e.g. {'platform-fee': 120, ...}."""
        conn = self._connect()
        rows = conn.execute(f"""
            SELECT kind, COALESCE(SUM(amount), 0) AS total
            FROM ledger_entries
            WHERE account_kind = ? AND {self._APPLIED}
            GROUP BY kind
        """, (account_kind,)).fetchall()
        conn.close()
        return {row["kind"]: row["total"] for row in rows}

    def net_external_flow(self, kinds) -> int:
        """Signed total of applied user entries of the given kinds."""
        kinds = list(kinds)
        placeholders = ", ".join("?" for _ in kinds)
        conn = self._connect()
        total = conn.execute(f"""
            SELECT COALESCE(SUM(CASE WHEN direction = 'credit' THEN amount ELSE -amount END), 0)
            FROM ledger_entries
            WHERE account_kind = 'user' AND kind IN ({placeholders}) AND {self._APPLIED}
        """, [k.value for k in kinds]).fetchone()[0]
        conn.close()
        return total

    def sum_pending(self, kind: EntryKind) -> int:
        conn = self._connect()
        total = conn.execute("""
            SELECT COALESCE(SUM(amount), 0) FROM ledger_entries
            WHERE kind = ? AND status = 'pending'
        """, (kind.value,)).fetchone()[0]
        conn.close()
        return total

    def _row_to_ledger_entry(self, row: sqlite3.Row) -> LedgerEntry:
        account = UserAccount(row["user_id"]) if row["account_kind"] == "user" else PLATFORM
        return LedgerEntry(
            entry_id=row["entry_id"],
            account=account,
            kind=EntryKind(row["kind"]),
            direction=EntryDirection(row["direction"]),
            amount=row["amount"],
            status=EntryStatus(row["status"]),
            match_id=row["match_id"],
            description=row["description"],
            external_ref=row["external_ref"],
            reviewed_by=row["reviewed_by"],
            review_note=row["review_note"],
            reviewed_at=_dt(row["reviewed_at"]),
            created_at=_dt(row["created_at"]) or datetime.utcnow(),
        )

    # === Match Operations ===

    def insert_match(self, cursor: sqlite3.Cursor, match: Match):
        cursor.execute("""
            INSERT INTO matches (
                match_id, player1_id, player2_id, entry_fee, pot, platform_cut, room_code,
                status, player1_result, player2_result, player1_evidence, player2_evidence,
                winner_id, abandon_reason, override_reason, overridden_by, version,
                created_at, updated_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, self._match_values(match))

    def get_match(self, match_id: str, cursor: Optional[sqlite3.Cursor] = None) -> Optional[Match]:
        """Get match by ID."""
        return self._fetch_one("SELECT * FROM matches WHERE match_id = ?", (match_id,), self._row_to_match, cursor)

    def compare_and_set_match(
        self,
        cursor: sqlite3.Cursor,
        match: Match,
        expected_status: MatchStatus,
        expected_version: int,
    ):
        """Write every mutable match field if, and only if, the stored row is
        still at (expected_status, expected_version). Bumps version.

        Raises ConcurrencyRetryError when another writer got there first.
        """
        match.version = expected_version + 1
        match.updated_at = datetime.utcnow()
        cursor.execute("""
            UPDATE matches SET
                player2_id=?, status=?, player1_result=?, player2_result=?,
                player1_evidence=?, player2_evidence=?, winner_id=?,
                abandon_reason=?, override_reason=?, overridden_by=?,
                version=?, updated_at=?, completed_at=?
            WHERE match_id=? AND status=? AND version=?
        """, (
            match.player2_id, match.status.value,
            match.player1_result.value if match.player1_result else None,
            match.player2_result.value if match.player2_result else None,
            match.player1_evidence, match.player2_evidence, match.winner_id,
            match.abandon_reason, match.override_reason, match.overridden_by,
            match.version, _ts(match.updated_at), _ts(match.completed_at),
            match.match_id, expected_status.value, expected_version,
        ))
        if cursor.rowcount == 0:
            raise ConcurrencyRetryError(
                f"Match {match.match_id} moved away from {expected_status.value}@v{expected_version}"
            )

    def list_matches(self, status: Optional[MatchStatus] = None, limit: int = 50) -> List[Match]:
        """List matches, newest first."""
        query = "SELECT * FROM matches"
        params = []
        if status:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return self._fetch_all(query, params, self._row_to_match)

    def get_user_matches(self, user_id: int, limit: int = 20) -> List[Match]:
        """Get recent matches for a user."""
        return self._fetch_all("""
            SELECT * FROM matches
            WHERE player1_id = ? OR player2_id = ?
            ORDER BY created_at DESC
            LIMIT ?
        """, (user_id, user_id, limit), self._row_to_match)

    def find_idle_matches(self, statuses, cutoff: datetime) -> List[Match]:
        """Matches in one of `statuses` created before cutoff, oldest first."""
        statuses = list(statuses)
        placeholders = ", ".join("?" for _ in statuses)
        return self._fetch_all(f"""
            SELECT * FROM matches
            WHERE status IN ({placeholders}) AND created_at < ?
            ORDER BY created_at ASC
        """, [s.value for s in statuses] + [_ts(cutoff)], self._row_to_match)

    def get_escrow_held(self) -> int:
        """Coins currently held in escrow: stakes of every non-terminal match."""
        conn = self._connect()
        total = conn.execute("""
            SELECT COALESCE(SUM(entry_fee * (CASE WHEN player2_id IS NULL THEN 1 ELSE 2 END)), 0)
            FROM matches
            WHERE status IN ('waiting', 'in-progress', 'conflict')
        """).fetchone()[0]
        conn.close()
        return total

    def _match_values(self, match: Match) -> tuple:
        return (
            match.match_id, match.player1_id, match.player2_id, match.entry_fee, match.pot,
            match.platform_cut, match.room_code, match.status.value,
            match.player1_result.value if match.player1_result else None,
            match.player2_result.value if match.player2_result else None,
            match.player1_evidence, match.player2_evidence, match.winner_id,
            match.abandon_reason, match.override_reason, match.overridden_by, match.version,
            _ts(match.created_at), _ts(match.updated_at), _ts(match.completed_at),
        )

    def _row_to_match(self, row: sqlite3.Row) -> Match:
        """Convert database row to Match object."""
        return Match(
            match_id=row["match_id"],
            player1_id=row["player1_id"],
            player2_id=row["player2_id"],
            entry_fee=row["entry_fee"],
            pot=row["pot"],
            platform_cut=row["platform_cut"],
            room_code=row["room_code"],
            status=MatchStatus(row["status"]),
            player1_result=MatchResult(row["player1_result"]) if row["player1_result"] else None,
            player2_result=MatchResult(row["player2_result"]) if row["player2_result"] else None,
            player1_evidence=row["player1_evidence"],
            player2_evidence=row["player2_evidence"],
            winner_id=row["winner_id"],
            abandon_reason=row["abandon_reason"],
            override_reason=row["override_reason"],
            overridden_by=row["overridden_by"],
            version=row["version"],
            created_at=_dt(row["created_at"]) or datetime.utcnow(),
            updated_at=_dt(row["updated_at"]) or datetime.utcnow(),
            completed_at=_dt(row["completed_at"]),
        )

    # === Cancel Request Operations ===

    def insert_cancel_request(self, cursor: sqlite3.Cursor, request: CancelRequest):
        try:
            cursor.execute("""
                INSERT INTO cancel_requests (
                    request_id, match_id, requested_by, reason, evidence, status,
                    reviewed_by, review_note, created_at, reviewed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                request.request_id, request.match_id, request.requested_by, request.reason.value,
                request.evidence, request.status.value, request.reviewed_by, request.review_note,
                _ts(request.created_at), _ts(request.reviewed_at),
            ))
        except sqlite3.IntegrityError as e:
            if "cancel_requests.match_id" in str(e) or "UNIQUE" in str(e):
                raise DuplicatePendingRequest()
            raise

    def get_cancel_request(self, request_id: str, cursor: Optional[sqlite3.Cursor] = None) -> Optional[CancelRequest]:
        return self._fetch_one(
            "SELECT * FROM cancel_requests WHERE request_id = ?", (request_id,), self._row_to_cancel_request, cursor
        )

    def get_pending_cancel_request(self, match_id: str, cursor: Optional[sqlite3.Cursor] = None) -> Optional[CancelRequest]:
        return self._fetch_one(
            "SELECT * FROM cancel_requests WHERE match_id = ? AND status = 'pending'",
            (match_id,), self._row_to_cancel_request, cursor,
        )

    def review_cancel_request(self, cursor: sqlite3.Cursor, request: CancelRequest):
        """Move a pending request to approved/rejected. Raises ConcurrencyRetryError
        if it was reviewed concurrently."""
        cursor.execute("""
            UPDATE cancel_requests SET
                status=?, reviewed_by=?, review_note=?, reviewed_at=?
            WHERE request_id=? AND status='pending'
        """, (
            request.status.value, request.reviewed_by, request.review_note,
            _ts(request.reviewed_at), request.request_id,
        ))
        if cursor.rowcount == 0:
            raise ConcurrencyRetryError(f"Cancel request {request.request_id} already reviewed")

    def list_cancel_requests(self, status: Optional[RequestStatus] = None, limit: int = 50) -> List[CancelRequest]:
        query = "SELECT * FROM cancel_requests"
        params = []
        if status:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return self._fetch_all(query, params, self._row_to_cancel_request)

    def _row_to_cancel_request(self, row: sqlite3.Row) -> CancelRequest:
        return CancelRequest(
            request_id=row["request_id"],
            match_id=row["match_id"],
            requested_by=row["requested_by"],
            reason=CancelReason(row["reason"]),
            evidence=row["evidence"],
            status=RequestStatus(row["status"]),
            reviewed_by=row["reviewed_by"],
            review_note=row["review_note"],
            created_at=_dt(row["created_at"]) or datetime.utcnow(),
            reviewed_at=_dt(row["reviewed_at"]),
        )

    # === Dispute Operations ===

    def insert_dispute(self, cursor: sqlite3.Cursor, dispute: DisputeEntry) -> int:
        cursor.execute("""
            INSERT INTO disputes (
                user_id, dispute_type, match_id, description, severity, risk_score,
                auto_flagged, evidence, status, action_taken, admin_notes,
                resolved_by, resolved_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            dispute.user_id, dispute.dispute_type.value, dispute.match_id, dispute.description,
            dispute.severity.value, dispute.risk_score, int(dispute.auto_flagged),
            json.dumps(dispute.evidence), dispute.status.value, dispute.action_taken.value,
            dispute.admin_notes, dispute.resolved_by, _ts(dispute.resolved_at), _ts(dispute.created_at),
        ))
        dispute.dispute_id = cursor.lastrowid
        return dispute.dispute_id

    def get_dispute(self, dispute_id: int, cursor: Optional[sqlite3.Cursor] = None) -> Optional[DisputeEntry]:
        return self._fetch_one(
            "SELECT * FROM disputes WHERE dispute_id = ?", (dispute_id,), self._row_to_dispute, cursor
        )

    def update_dispute_review(self, cursor: sqlite3.Cursor, dispute: DisputeEntry, expected_status: DisputeStatus):
        """Write review fields only. Description, evidence and score stay as recorded."""
        cursor.execute("""
            UPDATE disputes SET
                status=?, action_taken=?, admin_notes=?, resolved_by=?, resolved_at=?
            WHERE dispute_id=? AND status=?
        """, (
            dispute.status.value, dispute.action_taken.value, dispute.admin_notes,
            dispute.resolved_by, _ts(dispute.resolved_at), dispute.dispute_id, expected_status.value,
        ))
        if cursor.rowcount == 0:
            raise ConcurrencyRetryError(f"Dispute {dispute.dispute_id} changed concurrently")

    def count_user_disputes_since(self, cursor: sqlite3.Cursor, user_id: int, since: Optional[datetime] = None) -> int:
        if since is None:
            cursor.execute("SELECT COUNT(*) FROM disputes WHERE user_id = ?", (user_id,))
        else:
            cursor.execute(
                "SELECT COUNT(*) FROM disputes WHERE user_id = ? AND created_at >= ?", (user_id, _ts(since))
            )
        return cursor.fetchone()[0]

    def list_disputes(
        self,
        status: Optional[DisputeStatus] = None,
        severity: Optional[DisputeSeverity] = None,
        dispute_type: Optional[DisputeType] = None,
        match_id: Optional[str] = None,
        min_risk: int = 0,
        limit: int = 50,
    ) -> List[DisputeEntry]:
        """Get disputes with optional filters, riskiest first."""
        query = "SELECT * FROM disputes WHERE 1=1"
        params = []

        if status:
            query += " AND status = ?"
            params.append(status.value)
        if severity:
            query += " AND severity = ?"
            params.append(severity.value)
        if dispute_type:
            query += " AND dispute_type = ?"
            params.append(dispute_type.value)
        if match_id:
            query += " AND match_id = ?"
            params.append(match_id)
        if min_risk > 0:
            query += " AND risk_score >= ?"
            params.append(min_risk)

        query += " ORDER BY risk_score DESC, created_at DESC LIMIT ?"
        params.append(limit)

        return self._fetch_all(query, params, self._row_to_dispute)

    def dispute_statistics(self) -> dict:
        conn = self._connect()
        row = conn.execute("""
            SELECT
                COUNT(*) AS total,
                COALESCE(AVG(risk_score), 0) AS average_risk,
                COALESCE(SUM(CASE WHEN risk_score >= 70 THEN 1 ELSE 0 END), 0) AS high_risk,
                COALESCE(SUM(auto_flagged), 0) AS auto_flagged
            FROM disputes
        """).fetchone()
        by_status = dict(conn.execute("SELECT status, COUNT(*) FROM disputes GROUP BY status").fetchall())
        conn.close()
        return {
            "total_disputes": row["total"],
            "average_risk_score": round(row["average_risk"], 1),
            "high_risk_count": row["high_risk"],
            "auto_flagged_count": row["auto_flagged"],
            "by_status": by_status,
        }

    def _row_to_dispute(self, row: sqlite3.Row) -> DisputeEntry:
        return DisputeEntry(
            dispute_id=row["dispute_id"],
            user_id=row["user_id"],
            dispute_type=DisputeType(row["dispute_type"]),
            match_id=row["match_id"],
            description=row["description"],
            severity=DisputeSeverity(row["severity"]),
            risk_score=row["risk_score"],
            auto_flagged=bool(row["auto_flagged"]),
            evidence=json.loads(row["evidence"]) if row["evidence"] else {},
            status=DisputeStatus(row["status"]),
            action_taken=ActionTaken(row["action_taken"]),
            admin_notes=row["admin_notes"],
            resolved_by=row["resolved_by"],
            resolved_at=_dt(row["resolved_at"]),
            created_at=_dt(row["created_at"]) or datetime.utcnow(),
        )

    # === Admin Action Operations ===

    def insert_admin_action(self, cursor: sqlite3.Cursor, action: AdminAction) -> int:
        cursor.execute("""
            INSERT INTO admin_actions (admin_id, action, target_type, target_id, details, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            action.admin_id, action.action, action.target_type, str(action.target_id),
            json.dumps(action.details, default=str), _ts(action.timestamp),
        ))
        action.action_id = cursor.lastrowid
        return action.action_id

    def list_admin_actions(
        self,
        limit: int = 100,
        admin_id: Optional[int] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> List[AdminAction]:
        query = "SELECT * FROM admin_actions WHERE 1=1"
        params = []
        if admin_id is not None:
            query += " AND admin_id = ?"
            params.append(admin_id)
        if target_type:
            query += " AND target_type = ?"
            params.append(target_type)
        if target_id:
            query += " AND target_id = ?"
            params.append(str(target_id))
        query += " ORDER BY timestamp DESC, action_id DESC LIMIT ?"
        params.append(limit)
        return self._fetch_all(query, params, self._row_to_admin_action)

    def _row_to_admin_action(self, row: sqlite3.Row) -> AdminAction:
        return AdminAction(
            action_id=row["action_id"],
            admin_id=row["admin_id"],
            action=row["action"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            details=json.loads(row["details"]) if row["details"] else {},
            timestamp=_dt(row["timestamp"]) or datetime.utcnow(),
        )

    # === Helpers ===

    def _fetch_one(self, query: str, params, convert, cursor: Optional[sqlite3.Cursor] = None):
        if cursor is not None:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return convert(row) if row else None

        conn = self._connect()
        row = conn.execute(query, params).fetchone()
        conn.close()
        return convert(row) if row else None

    def _fetch_all(self, query: str, params, convert, cursor: Optional[sqlite3.Cursor] = None) -> list:
        if cursor is not None:
            cursor.execute(query, params)
            return [convert(row) for row in cursor.fetchall()]

        conn = self._connect()
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [convert(row) for row in rows]
