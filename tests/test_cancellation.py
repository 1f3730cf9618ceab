"""
Tests for cancel requests and refunds.

Tests cover:
1. Filing a request (validation, one pending request per match)
2. Admin review (approve refunds, reject keeps the match live)
3. Refund guards (no double refund, waiting matches)
"""
import pytest

from conftest import balance_of, ADMIN_ID
from database import (
    MatchStatus,
    RequestStatus,
    DisputeType,
    DisputeSeverity,
    EntryKind,
)
from errors import (
    ValidationError,
    NotParticipant,
    DuplicatePendingRequest,
    RequestAlreadyReviewed,
    InvalidDecision,
    CancelRequestNotFound,
    MatchAlreadyTerminal,
    AlreadySettled,
)
from matches import (
    create_match,
    request_cancellation,
    resolve_cancel_request,
    refund,
    settle,
    get_match,
)
from security import list_disputes


class TestRequestCancellation:
    """Tests for filing a cancel request."""

    def test_request_is_pending(self, db, live_match, alice):
        request = request_cancellation(db, live_match.match_id, alice.user_id, "game_crashed")

        assert request.request_id.startswith("cancel_")
        assert request.status == RequestStatus.PENDING
        assert get_match(db, live_match.match_id).status == MatchStatus.IN_PROGRESS
        assert balance_of(db, alice.user_id) == 950

    def test_unfair_play_is_high_severity(self, db, live_match, alice):
        request_cancellation(db, live_match.match_id, alice.user_id, "unfair_play")
        disputes = list_disputes(db, match_id=live_match.match_id)

        assert len(disputes) == 1
        assert disputes[0].dispute_type == DisputeType.CANCEL_REQUEST
        assert disputes[0].severity == DisputeSeverity.HIGH

    def test_technical_reason_is_low_severity(self, db, live_match, bob):
        request_cancellation(db, live_match.match_id, bob.user_id, "technical_issues")
        dispute = list_disputes(db, match_id=live_match.match_id)[0]

        assert dispute.severity == DisputeSeverity.LOW
        assert dispute.risk_score == 10

    def test_unknown_reason(self, db, live_match, alice):
        with pytest.raises(ValidationError):
            request_cancellation(db, live_match.match_id, alice.user_id, "bored")

    def test_outsider_cannot_request(self, db, live_match, carol):
        with pytest.raises(NotParticipant):
            request_cancellation(db, live_match.match_id, carol.user_id, "other")

    def test_one_pending_request_per_match(self, db, live_match, alice, bob):
        request_cancellation(db, live_match.match_id, alice.user_id, "other")
        with pytest.raises(DuplicatePendingRequest):
            request_cancellation(db, live_match.match_id, bob.user_id, "other")

    def test_terminal_match_cannot_be_cancelled(self, db, live_match, alice):
        settle(db, live_match.match_id, alice.user_id)
        with pytest.raises(MatchAlreadyTerminal):
            request_cancellation(db, live_match.match_id, alice.user_id, "other")

    def test_conflict_match_can_be_cancelled(self, db, conflict_match, bob):
        request = request_cancellation(db, conflict_match.match_id, bob.user_id, "opponent_not_responding")
        assert request.status == RequestStatus.PENDING


class TestResolveCancelRequest:
    """Tests for admin review of cancel requests."""

    def test_approve_refunds_both_players(self, db, live_match, alice, bob, notifier):
        request = request_cancellation(db, live_match.match_id, alice.user_id, "game_crashed")
        reviewed = resolve_cancel_request(
            db, request.request_id, "approve", ADMIN_ID, note="confirmed crash", notifier=notifier,
        )

        assert reviewed.status == RequestStatus.APPROVED
        assert reviewed.reviewed_by == ADMIN_ID
        assert reviewed.review_note == "confirmed crash"
        assert get_match(db, live_match.match_id).status == MatchStatus.CANCELLED
        assert balance_of(db, alice.user_id) == 1000
        assert balance_of(db, bob.user_id) == 1000
        assert {n.user_id for n in notifier.sent if n.event_type == "match_refunded"} == {
            alice.user_id, bob.user_id,
        }

    def test_approve_is_audited(self, db, live_match, alice):
        request = request_cancellation(db, live_match.match_id, alice.user_id, "other")
        resolve_cancel_request(db, request.request_id, "approved", ADMIN_ID)

        actions = db.list_admin_actions(target_type="cancel_request", target_id=request.request_id)
        assert len(actions) == 1
        assert actions[0].action == "cancel_request_approved"
        assert actions[0].details["refunded"] is True

    def test_reject_leaves_match_live(self, db, live_match, alice):
        request = request_cancellation(db, live_match.match_id, alice.user_id, "other")
        reviewed = resolve_cancel_request(db, request.request_id, "reject", ADMIN_ID)

        assert reviewed.status == RequestStatus.REJECTED
        assert get_match(db, live_match.match_id).status == MatchStatus.IN_PROGRESS
        assert balance_of(db, alice.user_id) == 950

    def test_new_request_allowed_after_reject(self, db, live_match, alice):
        first = request_cancellation(db, live_match.match_id, alice.user_id, "other")
        resolve_cancel_request(db, first.request_id, "reject", ADMIN_ID)

        second = request_cancellation(db, live_match.match_id, alice.user_id, "game_crashed")
        assert second.request_id != first.request_id

    def test_review_only_once(self, db, live_match, alice):
        request = request_cancellation(db, live_match.match_id, alice.user_id, "other")
        resolve_cancel_request(db, request.request_id, "approve", ADMIN_ID)

        with pytest.raises(RequestAlreadyReviewed):
            resolve_cancel_request(db, request.request_id, "approve", ADMIN_ID)
        assert balance_of(db, alice.user_id) == 1000

    def test_invalid_decision(self, db, live_match, alice):
        request = request_cancellation(db, live_match.match_id, alice.user_id, "other")
        with pytest.raises(InvalidDecision):
            resolve_cancel_request(db, request.request_id, "maybe", ADMIN_ID)

    def test_unknown_request(self, db):
        with pytest.raises(CancelRequestNotFound):
            resolve_cancel_request(db, "cancel_missing", "approve", ADMIN_ID)

    def test_approve_after_settlement_moves_nothing(self, db, live_match, alice, bob):
        """The match settled while the request waited: approval is a no-op on funds."""
        request = request_cancellation(db, live_match.match_id, bob.user_id, "other")
        settle(db, live_match.match_id, alice.user_id)

        reviewed = resolve_cancel_request(db, request.request_id, "approve", ADMIN_ID)

        assert reviewed.status == RequestStatus.APPROVED
        assert get_match(db, live_match.match_id).status == MatchStatus.COMPLETED
        assert balance_of(db, alice.user_id) == 1040
        assert balance_of(db, bob.user_id) == 950
        assert db.get_ledger_entries(match_id=live_match.match_id, kind=EntryKind.REFUND) == []


class TestRefund:
    """Tests for the refund primitive."""

    def test_refund_is_not_repeatable(self, db, live_match, alice, bob):
        refund(db, live_match.match_id)
        with pytest.raises(MatchAlreadyTerminal):
            refund(db, live_match.match_id)

        assert balance_of(db, alice.user_id) == 1000
        assert balance_of(db, bob.user_id) == 1000
        assert len(db.get_ledger_entries(match_id=live_match.match_id, kind=EntryKind.REFUND)) == 2

    def test_settled_match_cannot_be_refunded(self, db, live_match, alice):
        settle(db, live_match.match_id, alice.user_id)
        with pytest.raises(AlreadySettled):
            refund(db, live_match.match_id)

    def test_waiting_match_refunds_creator_only(self, db, alice):
        match = create_match(db, alice.user_id, 50, "ROOM-1")
        refunded = refund(db, match.match_id)

        assert refunded.status == MatchStatus.CANCELLED
        assert balance_of(db, alice.user_id) == 1000
        entries = db.get_ledger_entries(match_id=match.match_id, kind=EntryKind.REFUND)
        assert [e.user_id for e in entries] == [alice.user_id]

    def test_abandoned_refund_records_reason(self, db, live_match):
        match = refund(db, live_match.match_id, MatchStatus.ABANDONED, reason="idle")
        assert match.status == MatchStatus.ABANDONED
        assert get_match(db, live_match.match_id).abandon_reason == "idle"

    def test_refund_into_completed_is_rejected(self, db, live_match):
        with pytest.raises(ValidationError):
            refund(db, live_match.match_id, MatchStatus.COMPLETED)
