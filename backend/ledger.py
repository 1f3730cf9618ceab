"""
Coin ledger.

Every balance change goes through post_credit/post_debit, which apply the
balance mutation and append the matching ledger entry on the same cursor.
Callers run them inside Database.atomic so both land or neither does.

Deposits and withdrawals wait for admin review as pending entries. A
deposit credits the balance only on approval. A withdrawal reserves the
coins on request and a rejection returns them. A review writes the status
change and its balance effect in one transaction.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Union

from database import (
    Database,
    LedgerEntry,
    EntryKind,
    EntryStatus,
    EntryDirection,
    UserAccount,
    PLATFORM,
)
from errors import (
    InvalidAmount,
    InvalidDecision,
    InvalidTransaction,
    UserNotFound,
    AccountBanned,
    LedgerEntryNotFound,
    LedgerInvariantError,
    ValidationError,
)
from notifications import (
    Notification,
    BALANCE_ADJUSTED,
    DEPOSIT_APPROVED,
    DEPOSIT_REJECTED,
    WITHDRAWAL_APPROVED,
    WITHDRAWAL_REJECTED,
    dispatch,
)
from platform_config import MAX_TRANSFER_AMOUNT, MIN_WITHDRAWAL, SQLITE_MAX_INTEGER
from security import AdminActionLog
from security.audit import BALANCE_ADJUSTMENT, TRANSACTION_APPROVED, TRANSACTION_REJECTED
from utils import sanitize_text, is_valid_amount

# Kinds that move coins across the system boundary
EXTERNAL_KINDS = (EntryKind.ADMIN_ADJUSTMENT, EntryKind.DEPOSIT, EntryKind.WITHDRAWAL)
REVIEWABLE_KINDS = (EntryKind.DEPOSIT, EntryKind.WITHDRAWAL)

logger = logging.getLogger(__name__)


def new_entry_id() -> str:
    return f"tx_{uuid.uuid4().hex[:12]}"


def _check_amount(amount: int):
    if isinstance(amount, bool) or not isinstance(amount, int) or not 0 < amount <= SQLITE_MAX_INTEGER:
        logger.critical(f"[LEDGER] Refusing to post out-of-range or fractional amount {amount!r}")
        raise LedgerInvariantError(f"Ledger amounts must be positive 64-bit integers, got {amount!r}")


def post_credit(
    db: Database,
    cursor,
    user_id: int,
    kind: EntryKind,
    amount: int,
    match_id: Optional[str] = None,
    description: Optional[str] = None,
) -> LedgerEntry:
    """Credit a user's balance and record it."""
    _check_amount(amount)
    db.credit_balance(cursor, user_id, amount)
    entry = LedgerEntry(
        entry_id=new_entry_id(),
        account=UserAccount(user_id),
        kind=kind,
        direction=EntryDirection.CREDIT,
        amount=amount,
        match_id=match_id,
        description=description,
    )
    db.insert_ledger_entry(cursor, entry)
    return entry


def post_debit(
    db: Database,
    cursor,
    user_id: int,
    kind: EntryKind,
    amount: int,
    match_id: Optional[str] = None,
    description: Optional[str] = None,
    status: EntryStatus = EntryStatus.APPROVED,
    external_ref: Optional[str] = None,
) -> LedgerEntry:
    """Debit a user's balance and record it. Raises InsufficientBalance
    without touching anything when the balance does not cover it.

    A PENDING debit is a reservation: the coins leave the balance now and
    the entry waits for review.
    """
    _check_amount(amount)
    db.debit_balance(cursor, user_id, amount)
    entry = LedgerEntry(
        entry_id=new_entry_id(),
        account=UserAccount(user_id),
        kind=kind,
        direction=EntryDirection.DEBIT,
        amount=amount,
        match_id=match_id,
        description=description,
        status=status,
        external_ref=external_ref,
    )
    db.insert_ledger_entry(cursor, entry)
    return entry


def post_platform(
    db: Database,
    cursor,
    kind: EntryKind,
    amount: int,
    match_id: Optional[str] = None,
    description: Optional[str] = None,
    direction: EntryDirection = EntryDirection.CREDIT,
) -> LedgerEntry:
    """Record an entry against the platform account. No user balance moves."""
    _check_amount(amount)
    entry = LedgerEntry(
        entry_id=new_entry_id(),
        account=PLATFORM,
        kind=kind,
        direction=direction,
        amount=amount,
        match_id=match_id,
        description=description,
    )
    db.insert_ledger_entry(cursor, entry)
    return entry


# === Public operations ===

def get_balance(db: Database, user_id: int) -> int:
    user = db.get_user(user_id)
    if not user:
        raise UserNotFound()
    return user.balance


def list_ledger_entries(
    db: Database,
    user_id: Optional[int] = None,
    match_id: Optional[str] = None,
    kind: Optional[Union[EntryKind, str]] = None,
    status: Optional[Union[EntryStatus, str]] = None,
    limit: int = 100,
) -> List[LedgerEntry]:
    """Ledger entries, newest first."""
    if isinstance(kind, str):
        try:
            kind = EntryKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown ledger entry kind '{kind}'")
    if isinstance(status, str):
        try:
            status = EntryStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown ledger entry status '{status}'")
    return db.get_ledger_entries(user_id=user_id, match_id=match_id, kind=kind, status=status, limit=limit)


def adjust_balance(
    db: Database,
    admin_id: int,
    user_id: int,
    amount: int,
    direction: Union[EntryDirection, str],
    reason: str,
    notifier=None,
) -> LedgerEntry:
    """Admin credit or debit of a user's balance.

    This is how coins enter and leave the system (manual deposits and
    withdrawals). A debit never takes a balance below zero.
    """
    valid, error = is_valid_amount(amount, MAX_TRANSFER_AMOUNT)
    if not valid:
        raise InvalidAmount(error)
    if isinstance(direction, str):
        try:
            direction = EntryDirection(direction)
        except ValueError:
            raise ValidationError("Direction must be 'credit' or 'debit'")
    reason = sanitize_text(reason, max_length=200)
    if not reason:
        raise ValidationError("A reason is required for balance adjustments")

    description = f"Admin {admin_id}: {reason}"

    def _adjust(cursor):
        if direction == EntryDirection.CREDIT:
            return post_credit(db, cursor, user_id, EntryKind.ADMIN_ADJUSTMENT, amount, description=description)
        return post_debit(db, cursor, user_id, EntryKind.ADMIN_ADJUSTMENT, amount, description=description)

    entry = db.atomic(_adjust, label="balance adjustment")

    logger.info(f"[LEDGER] Admin {admin_id} {direction.value} {amount} for user {user_id}: {reason}")
    AdminActionLog(db).record(
        admin_id,
        BALANCE_ADJUSTMENT,
        "user",
        user_id,
        {"amount": amount, "direction": direction.value, "reason": reason, "entry_id": entry.entry_id},
    )
    dispatch(notifier, [Notification(user_id, BALANCE_ADJUSTED, entry.signed_amount, entry.entry_id)])
    return entry


# === Deposits and withdrawals ===

def _load_active_user(db: Database, cursor, user_id: int):
    user = db.get_user(user_id, cursor)
    if not user:
        raise UserNotFound()
    if user.is_banned:
        raise AccountBanned()
    return user


def request_deposit(db: Database, user_id: int, amount: int, proof_ref: str) -> LedgerEntry:
    """File a deposit for admin review.

    The entry is written as a pending credit and the balance is untouched
    until an admin approves it.
    """
    valid, error = is_valid_amount(amount, MAX_TRANSFER_AMOUNT)
    if not valid:
        raise InvalidAmount(error)
    proof_ref = sanitize_text(proof_ref, max_length=300)
    if not proof_ref:
        raise ValidationError("Payment proof is required for a deposit")

    def _request(cursor):
        _load_active_user(db, cursor, user_id)
        entry = LedgerEntry(
            entry_id=new_entry_id(),
            account=UserAccount(user_id),
            kind=EntryKind.DEPOSIT,
            direction=EntryDirection.CREDIT,
            amount=amount,
            status=EntryStatus.PENDING,
            description="Deposit request",
            external_ref=proof_ref,
        )
        db.insert_ledger_entry(cursor, entry)
        return entry

    entry = db.atomic(_request, label="deposit request")
    logger.info(f"[LEDGER] User {user_id} requested deposit of {amount} ({entry.entry_id})")
    return entry


def request_withdrawal(db: Database, user_id: int, amount: int, payout_to: str) -> LedgerEntry:
    """Reserve coins for a payout and queue it for admin review.

    The coins leave the balance immediately (pending debit), so they cannot
    be staked while the payout is reviewed. A rejection returns them.
    """
    valid, error = is_valid_amount(amount, MAX_TRANSFER_AMOUNT, min_amount=MIN_WITHDRAWAL)
    if not valid:
        raise InvalidAmount(error)
    payout_to = sanitize_text(payout_to, max_length=200)
    if not payout_to:
        raise ValidationError("A payout destination is required for a withdrawal")

    def _request(cursor):
        _load_active_user(db, cursor, user_id)
        return post_debit(
            db, cursor, user_id, EntryKind.WITHDRAWAL, amount,
            description="Withdrawal request - amount reserved",
            status=EntryStatus.PENDING,
            external_ref=payout_to,
        )

    entry = db.atomic(_request, label="withdrawal request")
    logger.info(f"[LEDGER] User {user_id} reserved {amount} for withdrawal ({entry.entry_id})")
    return entry


def list_pending_transactions(
    db: Database,
    kind: Optional[Union[EntryKind, str]] = None,
    limit: int = 50,
) -> List[LedgerEntry]:
    """Deposits and withdrawals waiting for review, newest first."""
    if isinstance(kind, str):
        try:
            kind = EntryKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown transaction kind '{kind}'")
    if kind is not None and kind not in REVIEWABLE_KINDS:
        raise InvalidTransaction()
    kinds = [kind] if kind else list(REVIEWABLE_KINDS)
    pending = []
    for k in kinds:
        pending.extend(db.get_ledger_entries(kind=k, status=EntryStatus.PENDING, limit=limit))
    pending.sort(key=lambda e: e.created_at, reverse=True)
    return pending[:limit]


def review_transaction(
    db: Database,
    admin_id: int,
    entry_id: str,
    decision: str,
    note: str = "",
    notifier=None,
) -> LedgerEntry:
    """Approve or reject a pending deposit or withdrawal.

    The status flip and its balance effect share one transaction:
        deposit approved     -> balance credited
        deposit rejected     -> nothing moves
        withdrawal approved  -> nothing moves (coins were reserved on request)
        withdrawal rejected  -> reserved coins returned
    """
    if decision not in ("approve", "reject"):
        raise InvalidDecision("Decision must be 'approve' or 'reject'")
    note = sanitize_text(note, max_length=500)
    approved = decision == "approve"

    def _review(cursor):
        entry = db.get_ledger_entry(entry_id, cursor)
        if not entry:
            raise LedgerEntryNotFound()
        if entry.kind not in REVIEWABLE_KINDS:
            raise InvalidTransaction()

        entry.status = EntryStatus.APPROVED if approved else EntryStatus.REJECTED
        entry.reviewed_by = admin_id
        entry.review_note = note or None
        entry.reviewed_at = datetime.utcnow()
        db.review_ledger_entry(cursor, entry)

        # The reviewed entry is the record, no second entry is written
        if entry.kind == EntryKind.DEPOSIT and approved:
            db.credit_balance(cursor, entry.user_id, entry.amount)
        elif entry.kind == EntryKind.WITHDRAWAL and not approved:
            db.credit_balance(cursor, entry.user_id, entry.amount)
        return entry

    entry = db.atomic(_review, label="transaction review")

    logger.info(
        f"[LEDGER] Admin {admin_id} {entry.status.value} {entry.kind.value} {entry.entry_id} "
        f"({entry.amount} for user {entry.user_id})"
    )
    AdminActionLog(db).record(
        admin_id,
        TRANSACTION_APPROVED if approved else TRANSACTION_REJECTED,
        "transaction",
        entry.entry_id,
        {"kind": entry.kind.value, "amount": entry.amount, "user_id": entry.user_id, "note": note},
    )
    if entry.kind == EntryKind.DEPOSIT:
        event = DEPOSIT_APPROVED if approved else DEPOSIT_REJECTED
    else:
        event = WITHDRAWAL_APPROVED if approved else WITHDRAWAL_REJECTED
    dispatch(notifier, [Notification(entry.user_id, event, entry.amount, entry.entry_id)])
    return entry


@dataclass
class Reconciliation:
    """Stored balance vs. the balance replayed from the ledger."""
    user_id: int
    stored_balance: int
    ledger_balance: int

    @property
    def difference(self) -> int:
        return self.stored_balance - self.ledger_balance

    @property
    def ok(self) -> bool:
        return self.difference == 0


def reconcile_account(db: Database, user_id: int) -> Reconciliation:
    """Replay a user's applied entries and compare with the stored balance.

    Applied means approved, plus pending withdrawals (coins already reserved).
    """
    user = db.get_user(user_id)
    if not user:
        raise UserNotFound()

    result = Reconciliation(
        user_id=user_id,
        stored_balance=user.balance,
        ledger_balance=db.sum_user_entries(user_id),
    )
    if not result.ok:
        logger.critical(
            f"[LEDGER] Balance mismatch for user {user_id}: stored={result.stored_balance} "
            f"ledger={result.ledger_balance} diff={result.difference}"
        )
    return result


def platform_summary(db: Database) -> dict:
    """Where every coin currently is.

    Coins only enter or leave through admin adjustments, deposits and
    withdrawals, so user balances + escrow + platform net revenue must
    equal the net external flow at all times. A pending withdrawal has
    already left the balances and counts as flowed out.
    """
    user_totals = db.ledger_totals_by_kind("user")
    platform_totals = db.ledger_totals_by_kind("platform")
    net_external = db.net_external_flow(EXTERNAL_KINDS)

    fees = platform_totals.get(EntryKind.PLATFORM_FEE.value, 0)
    referral_rewards = platform_totals.get(EntryKind.REFERRAL_REWARD.value, 0)
    referral_paid = user_totals.get(EntryKind.REFERRAL_REWARD.value, 0)
    escrow_held = db.get_escrow_held()
    user_balances = db.get_total_balances()

    # The pot side of the ledger: stakes in minus what was released
    escrow_from_ledger = (
        platform_totals.get(EntryKind.ESCROW_CREDIT.value, 0)
        - user_totals.get(EntryKind.REFUND.value, 0)
        - user_totals.get(EntryKind.WINNINGS.value, 0)
        - fees
    )

    net_revenue = fees - referral_rewards
    conserved = (
        user_balances + escrow_held + net_revenue == net_external
        and escrow_from_ledger == escrow_held
        and referral_paid == referral_rewards
    )
    if not conserved:
        logger.critical(
            f"[LEDGER] Conservation check failed: balances={user_balances} escrow={escrow_held} "
            f"(ledger says {escrow_from_ledger}) net_revenue={net_revenue} external={net_external} "
            f"referrals paid={referral_paid} funded={referral_rewards}"
        )

    return {
        "total_user_balances": user_balances,
        "escrow_held": escrow_held,
        "escrow_from_ledger": escrow_from_ledger,
        "platform_fees": fees,
        "referral_rewards": referral_rewards,
        "platform_net_revenue": net_revenue,
        "net_external_flow": net_external,
        "pending_deposits": db.sum_pending(EntryKind.DEPOSIT),
        "pending_withdrawals": db.sum_pending(EntryKind.WITHDRAWAL),
        "conserved": conserved,
    }
