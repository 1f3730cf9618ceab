"""
Tests for the ledger layer.

Tests cover:
1. Posting primitives and their invariants
2. Admin balance adjustments
3. Per-account reconciliation and platform-wide conservation
4. Deposit and withdrawal requests and their review
5. Amount bounds
"""
import pytest

from conftest import balance_of, make_player, ADMIN_ID
from database import EntryKind, EntryDirection, EntryStatus
from errors import (
    InvalidAmount,
    InvalidDecision,
    InvalidTransaction,
    InsufficientBalance,
    LedgerEntryNotFound,
    LedgerInvariantError,
    TransactionAlreadyReviewed,
    UserNotFound,
    ValidationError,
)
from ledger import (
    adjust_balance,
    get_balance,
    list_ledger_entries,
    list_pending_transactions,
    platform_summary,
    post_credit,
    reconcile_account,
    request_deposit,
    request_withdrawal,
    review_transaction,
)
from matches import create_match, join_match, submit_result, settle, refund
from platform_config import MAX_TRANSFER_AMOUNT, SQLITE_MAX_INTEGER


class TestPosting:
    """Tests for the low-level posting functions."""

    @pytest.mark.parametrize("amount", [0, -1, 2.5])
    def test_bad_amounts_are_invariant_errors(self, db, alice, amount):
        with pytest.raises(LedgerInvariantError):
            with db.transaction() as cursor:
                post_credit(db, cursor, alice.user_id, EntryKind.REFUND, amount)
        assert balance_of(db, alice.user_id) == 1000

    def test_amount_beyond_integer_range(self, db, alice):
        with pytest.raises(LedgerInvariantError):
            with db.transaction() as cursor:
                post_credit(db, cursor, alice.user_id, EntryKind.REFUND, 2 ** 63)
        assert balance_of(db, alice.user_id) == 1000

    def test_credit_that_would_overflow_balance(self, db, alice):
        with db.transaction() as cursor:
            cursor.execute(
                "UPDATE users SET balance = ? WHERE user_id = ?", (SQLITE_MAX_INTEGER - 5, alice.user_id)
            )

        with pytest.raises(LedgerInvariantError):
            with db.transaction() as cursor:
                post_credit(db, cursor, alice.user_id, EntryKind.REFUND, 10)
        assert balance_of(db, alice.user_id) == SQLITE_MAX_INTEGER - 5

    def test_entry_ids_are_unique(self, db, alice):
        entries = db.get_ledger_entries(user_id=alice.user_id)
        adjust_balance(db, ADMIN_ID, alice.user_id, 5, "credit", "bonus")
        ids = [e.entry_id for e in db.get_ledger_entries(user_id=alice.user_id)]

        assert len(ids) == len(entries) + 1
        assert len(set(ids)) == len(ids)
        assert all(i.startswith("tx_") for i in ids)


class TestAdjustBalance:
    """Tests for admin credits and debits."""

    def test_credit(self, db, alice, notifier):
        entry = adjust_balance(db, ADMIN_ID, alice.user_id, 250, "credit", "deposit #12", notifier=notifier)

        assert balance_of(db, alice.user_id) == 1250
        assert entry.kind == EntryKind.ADMIN_ADJUSTMENT
        assert entry.description == f"Admin {ADMIN_ID}: deposit #12"
        assert notifier.sent[0].event_type == "balance_adjusted"
        assert notifier.sent[0].amount == 250

    def test_debit(self, db, alice):
        entry = adjust_balance(db, ADMIN_ID, alice.user_id, 300, EntryDirection.DEBIT, "withdrawal")
        assert balance_of(db, alice.user_id) == 700
        assert entry.signed_amount == -300

    def test_debit_cannot_go_negative(self, db, alice):
        with pytest.raises(InsufficientBalance):
            adjust_balance(db, ADMIN_ID, alice.user_id, 1001, "debit", "withdrawal")
        assert balance_of(db, alice.user_id) == 1000

    @pytest.mark.parametrize("amount", [0, -10, 1.5, True])
    def test_invalid_amount(self, db, alice, amount):
        with pytest.raises(InvalidAmount):
            adjust_balance(db, ADMIN_ID, alice.user_id, amount, "credit", "x")

    @pytest.mark.parametrize("amount", [MAX_TRANSFER_AMOUNT + 1, 2 ** 63])
    def test_oversized_amount(self, db, alice, amount):
        with pytest.raises(InvalidAmount):
            adjust_balance(db, ADMIN_ID, alice.user_id, amount, "credit", "x")
        assert balance_of(db, alice.user_id) == 1000

    def test_invalid_direction(self, db, alice):
        with pytest.raises(ValidationError):
            adjust_balance(db, ADMIN_ID, alice.user_id, 10, "sideways", "x")

    def test_reason_required(self, db, alice):
        with pytest.raises(ValidationError):
            adjust_balance(db, ADMIN_ID, alice.user_id, 10, "credit", "")

    def test_unknown_user(self, db):
        with pytest.raises(UserNotFound):
            adjust_balance(db, ADMIN_ID, 424242, 10, "credit", "deposit")

    def test_adjustment_is_audited(self, db, alice):
        adjust_balance(db, ADMIN_ID, alice.user_id, 10, "credit", "goodwill")
        actions = db.list_admin_actions(target_type="user", target_id=str(alice.user_id))

        assert actions[0].action == "balance_adjustment"
        assert actions[0].details["reason"] == "goodwill"


class TestQueries:
    """Tests for balance and entry lookups."""

    def test_get_balance(self, db, alice):
        assert get_balance(db, alice.user_id) == 1000
        with pytest.raises(UserNotFound):
            get_balance(db, 424242)

    def test_filter_by_kind_string(self, db, live_match, alice):
        entries = list_ledger_entries(db, user_id=alice.user_id, kind="escrow-debit")
        assert [e.match_id for e in entries] == [live_match.match_id]

    def test_unknown_kind(self, db):
        with pytest.raises(ValidationError):
            list_ledger_entries(db, kind="bonus")


class TestReconciliation:
    """Tests for balance replay and conservation."""

    def test_clean_account_reconciles(self, db, live_match, alice, bob):
        settle(db, live_match.match_id, alice.user_id)

        for user in (alice, bob):
            result = reconcile_account(db, user.user_id)
            assert result.ok
            assert result.difference == 0

    def test_tampered_balance_is_detected(self, db, alice):
        with db.transaction() as cursor:
            cursor.execute("UPDATE users SET balance = balance + 7 WHERE user_id = ?", (alice.user_id,))

        result = reconcile_account(db, alice.user_id)
        assert not result.ok
        assert result.difference == 7
        assert result.ledger_balance == 1000

    def test_summary_conserved_through_every_path(self, db, alice, bob, carol):
        referrer = make_player(db, "referrer", balance=0)
        dave = make_player(db, "dave", referral_code=referrer.referral_code)

        # Settled with a referral reward
        m1 = create_match(db, dave.user_id, 500, "ROOM-1")
        join_match(db, m1.match_id, alice.user_id)
        settle(db, m1.match_id, dave.user_id)

        # Refunded
        m2 = create_match(db, bob.user_id, 40, "ROOM-2")
        join_match(db, m2.match_id, carol.user_id)
        refund(db, m2.match_id)

        # In conflict, still in escrow
        m3 = create_match(db, bob.user_id, 30, "ROOM-3")
        join_match(db, m3.match_id, carol.user_id)
        submit_result(db, m3.match_id, bob.user_id, "win", "evidence/b.png")
        submit_result(db, m3.match_id, carol.user_id, "win", "evidence/c.png")

        # Waiting, creator stake in escrow
        create_match(db, alice.user_id, 25, "ROOM-4")

        adjust_balance(db, ADMIN_ID, carol.user_id, 100, "debit", "withdrawal")

        summary = platform_summary(db)
        assert summary["escrow_held"] == 60 + 25
        assert summary["escrow_from_ledger"] == summary["escrow_held"]
        assert summary["platform_fees"] == 100
        assert summary["referral_rewards"] == 10
        assert summary["platform_net_revenue"] == 90
        assert summary["net_external_flow"] == 4 * 1000 - 100
        assert summary["conserved"] is True


class TestDeposits:
    """Tests for player deposit requests."""

    def test_pending_deposit_moves_nothing(self, db, alice):
        entry = request_deposit(db, alice.user_id, 200, "bank-ref-881")

        assert entry.status == EntryStatus.PENDING
        assert entry.kind == EntryKind.DEPOSIT
        assert entry.external_ref == "bank-ref-881"
        assert balance_of(db, alice.user_id) == 1000
        assert reconcile_account(db, alice.user_id).ok
        assert platform_summary(db)["pending_deposits"] == 200
        assert platform_summary(db)["conserved"] is True

    def test_approval_credits_balance(self, db, alice, notifier):
        entry = request_deposit(db, alice.user_id, 200, "bank-ref-881")
        reviewed = review_transaction(db, ADMIN_ID, entry.entry_id, "approve", "seen in bank", notifier=notifier)

        assert reviewed.status == EntryStatus.APPROVED
        assert reviewed.reviewed_by == ADMIN_ID
        assert balance_of(db, alice.user_id) == 1200
        assert reconcile_account(db, alice.user_id).ok
        assert platform_summary(db)["conserved"] is True
        assert notifier.sent[-1].event_type == "deposit_approved"

    def test_rejection_moves_nothing(self, db, alice):
        entry = request_deposit(db, alice.user_id, 200, "bank-ref-881")
        reviewed = review_transaction(db, ADMIN_ID, entry.entry_id, "reject", "no such payment")

        assert reviewed.status == EntryStatus.REJECTED
        assert db.get_ledger_entry(entry.entry_id).review_note == "no such payment"
        assert balance_of(db, alice.user_id) == 1000
        assert reconcile_account(db, alice.user_id).ok

    def test_proof_required(self, db, alice):
        with pytest.raises(ValidationError):
            request_deposit(db, alice.user_id, 200, "   ")

    @pytest.mark.parametrize("amount", [0, -5, 2.5, MAX_TRANSFER_AMOUNT + 1])
    def test_bad_amount(self, db, alice, amount):
        with pytest.raises(InvalidAmount):
            request_deposit(db, alice.user_id, amount, "bank-ref")


class TestWithdrawals:
    """Tests for player withdrawal requests."""

    def test_request_reserves_coins(self, db, alice):
        entry = request_withdrawal(db, alice.user_id, 300, "upi:alice@bank")

        assert entry.status == EntryStatus.PENDING
        assert entry.direction == EntryDirection.DEBIT
        assert balance_of(db, alice.user_id) == 700

    def test_reconciles_while_pending(self, db, alice):
        request_withdrawal(db, alice.user_id, 300, "upi:alice@bank")

        result = reconcile_account(db, alice.user_id)
        assert result.ok
        assert result.ledger_balance == 700

        summary = platform_summary(db)
        assert summary["pending_withdrawals"] == 300
        assert summary["conserved"] is True

    def test_reserved_coins_cannot_be_staked(self, db, alice):
        request_withdrawal(db, alice.user_id, 1000, "upi:alice@bank")
        with pytest.raises(InsufficientBalance):
            create_match(db, alice.user_id, 10, "ROOM-1")

    def test_approval_keeps_coins_out(self, db, alice, notifier):
        entry = request_withdrawal(db, alice.user_id, 300, "upi:alice@bank")
        review_transaction(db, ADMIN_ID, entry.entry_id, "approve", notifier=notifier)

        assert balance_of(db, alice.user_id) == 700
        assert reconcile_account(db, alice.user_id).ok
        summary = platform_summary(db)
        assert summary["pending_withdrawals"] == 0
        assert summary["conserved"] is True
        assert notifier.sent[-1].event_type == "withdrawal_approved"

    def test_rejection_returns_coins(self, db, alice):
        entry = request_withdrawal(db, alice.user_id, 300, "upi:alice@bank")
        review_transaction(db, ADMIN_ID, entry.entry_id, "reject", "payout details invalid")

        assert balance_of(db, alice.user_id) == 1000
        assert db.get_ledger_entry(entry.entry_id).status == EntryStatus.REJECTED
        assert reconcile_account(db, alice.user_id).ok
        assert platform_summary(db)["conserved"] is True

    def test_more_than_balance(self, db, alice):
        with pytest.raises(InsufficientBalance):
            request_withdrawal(db, alice.user_id, 1001, "upi:alice@bank")
        assert balance_of(db, alice.user_id) == 1000
        assert db.get_ledger_entries(kind=EntryKind.WITHDRAWAL) == []

    def test_below_minimum(self, db, alice):
        with pytest.raises(InvalidAmount):
            request_withdrawal(db, alice.user_id, 5, "upi:alice@bank")

    def test_payout_destination_required(self, db, alice):
        with pytest.raises(ValidationError):
            request_withdrawal(db, alice.user_id, 100, "")


class TestTransactionReview:
    """Tests for the admin review of pending transactions."""

    def test_pending_queue(self, db, alice, bob):
        deposit = request_deposit(db, alice.user_id, 50, "bank-ref")
        withdrawal = request_withdrawal(db, bob.user_id, 60, "upi:bob@bank")

        assert {e.entry_id for e in list_pending_transactions(db)} == {deposit.entry_id, withdrawal.entry_id}
        assert [e.entry_id for e in list_pending_transactions(db, kind="withdrawal")] == [withdrawal.entry_id]

        review_transaction(db, ADMIN_ID, deposit.entry_id, "approve")
        assert [e.entry_id for e in list_pending_transactions(db)] == [withdrawal.entry_id]

    def test_only_transfers_are_queued(self, db):
        with pytest.raises(InvalidTransaction):
            list_pending_transactions(db, kind="winnings")

    def test_second_review_refused(self, db, alice):
        entry = request_withdrawal(db, alice.user_id, 300, "upi:alice@bank")
        review_transaction(db, ADMIN_ID, entry.entry_id, "reject")

        with pytest.raises(TransactionAlreadyReviewed):
            review_transaction(db, ADMIN_ID, entry.entry_id, "reject")
        assert balance_of(db, alice.user_id) == 1000

    def test_unknown_entry(self, db):
        with pytest.raises(LedgerEntryNotFound):
            review_transaction(db, ADMIN_ID, "tx_missing", "approve")

    def test_match_entries_cannot_be_reviewed(self, db, live_match, alice):
        stake = list_ledger_entries(db, user_id=alice.user_id, kind="escrow-debit")[0]
        with pytest.raises(InvalidTransaction):
            review_transaction(db, ADMIN_ID, stake.entry_id, "reject")

    def test_bad_decision(self, db, alice):
        entry = request_deposit(db, alice.user_id, 50, "bank-ref")
        with pytest.raises(InvalidDecision):
            review_transaction(db, ADMIN_ID, entry.entry_id, "maybe")

    def test_review_is_audited(self, db, alice):
        entry = request_deposit(db, alice.user_id, 50, "bank-ref")
        review_transaction(db, ADMIN_ID, entry.entry_id, "approve", "ok")

        actions = db.list_admin_actions(target_type="transaction", target_id=entry.entry_id)
        assert actions[0].action == "transaction_approved"
        assert actions[0].details["amount"] == 50

    def test_status_filter(self, db, alice):
        request_withdrawal(db, alice.user_id, 300, "upi:alice@bank")
        pending = list_ledger_entries(db, user_id=alice.user_id, status="pending")

        assert [e.kind for e in pending] == [EntryKind.WITHDRAWAL]
        with pytest.raises(ValidationError):
            list_ledger_entries(db, status="lost")
