"""
Tests for admin overrides and dispute review.

Tests cover:
1. Overriding conflict and live matches (winner or draw)
2. Override guards (terminal matches, bad winners, missing reason)
3. Dispute review actions and their effect on users
"""
import pytest

from conftest import balance_of, ADMIN_ID
from database import MatchStatus, DisputeStatus, ActionTaken, EntryKind
from errors import (
    AlreadySettled,
    MatchAlreadyTerminal,
    MatchNotActive,
    InvalidWinner,
    ValidationError,
    DisputeAlreadyClosed,
    DisputeNotFound,
    AccountBanned,
)
from matches import (
    create_match,
    override_match,
    resolve_dispute,
    refund,
    get_match,
    DRAW,
)
from security import list_disputes


class TestOverrideMatch:
    """Tests for deciding a match by hand."""

    def test_conflict_resolved_for_player2(self, db, conflict_match, alice, bob):
        match = override_match(db, conflict_match.match_id, bob.user_id, "bob's screenshot is genuine", ADMIN_ID)

        assert match.status == MatchStatus.COMPLETED
        assert match.winner_id == bob.user_id
        assert match.overridden_by == ADMIN_ID
        assert match.override_reason == "bob's screenshot is genuine"
        assert balance_of(db, bob.user_id) == 1040
        assert balance_of(db, alice.user_id) == 950

    def test_override_is_audited(self, db, conflict_match, bob):
        override_match(db, conflict_match.match_id, bob.user_id, "proof checked", ADMIN_ID)

        actions = db.list_admin_actions(admin_id=ADMIN_ID, target_type="match")
        assert len(actions) == 1
        assert actions[0].action == "match_override"
        assert actions[0].details["previous_status"] == "conflict"
        assert actions[0].details["reported_results"] == {"player1_result": "win", "player2_result": "win"}

    def test_override_keeps_conflict_disputes(self, db, conflict_match, bob):
        override_match(db, conflict_match.match_id, bob.user_id, "proof checked", ADMIN_ID)
        assert len(list_disputes(db, match_id=conflict_match.match_id)) == 2

    def test_second_override_rejected(self, db, conflict_match, alice, bob):
        override_match(db, conflict_match.match_id, bob.user_id, "first call", ADMIN_ID)
        with pytest.raises(AlreadySettled):
            override_match(db, conflict_match.match_id, alice.user_id, "second call", ADMIN_ID)
        assert balance_of(db, bob.user_id) == 1040

    def test_winner_as_numeric_string(self, db, conflict_match, alice):
        match = override_match(db, conflict_match.match_id, str(alice.user_id), "checked", ADMIN_ID)
        assert match.winner_id == alice.user_id

    def test_draw_refunds_live_match(self, db, live_match, alice, bob):
        match = override_match(db, live_match.match_id, DRAW, "server outage", ADMIN_ID)

        assert match.status == MatchStatus.CANCELLED
        assert match.winner_id is None
        assert balance_of(db, alice.user_id) == 1000
        assert balance_of(db, bob.user_id) == 1000
        assert db.get_ledger_entries(match_id=live_match.match_id, kind=EntryKind.PLATFORM_FEE) == []

    def test_draw_on_waiting_match(self, db, alice):
        match = create_match(db, alice.user_id, 50, "ROOM-1")
        cancelled = override_match(db, match.match_id, "DRAW", "stale lobby", ADMIN_ID)

        assert cancelled.status == MatchStatus.CANCELLED
        assert balance_of(db, alice.user_id) == 1000

    def test_winner_on_waiting_match_rejected(self, db, alice):
        match = create_match(db, alice.user_id, 50, "ROOM-1")
        with pytest.raises(MatchNotActive):
            override_match(db, match.match_id, alice.user_id, "no opponent", ADMIN_ID)
        assert get_match(db, match.match_id).status == MatchStatus.WAITING

    @pytest.mark.parametrize("winner", ["nobody", None])
    def test_malformed_winner(self, db, conflict_match, winner):
        with pytest.raises(InvalidWinner):
            override_match(db, conflict_match.match_id, winner, "checked", ADMIN_ID)

    def test_outsider_cannot_be_winner(self, db, conflict_match, carol):
        with pytest.raises(InvalidWinner):
            override_match(db, conflict_match.match_id, carol.user_id, "checked", ADMIN_ID)
        assert get_match(db, conflict_match.match_id).status == MatchStatus.CONFLICT

    def test_reason_required(self, db, conflict_match, bob):
        with pytest.raises(ValidationError):
            override_match(db, conflict_match.match_id, bob.user_id, "  ", ADMIN_ID)

    def test_abandoned_match_cannot_be_overridden(self, db, live_match, alice):
        refund(db, live_match.match_id, MatchStatus.ABANDONED, reason="idle")
        with pytest.raises(MatchAlreadyTerminal):
            override_match(db, live_match.match_id, alice.user_id, "late claim", ADMIN_ID)


class TestResolveDispute:
    """Tests for reviewing dispute entries."""

    def _alice_dispute(self, db, conflict_match, alice):
        disputes = list_disputes(db, match_id=conflict_match.match_id)
        return next(d for d in disputes if d.user_id == alice.user_id)

    def test_investigate_then_resolve(self, db, conflict_match, alice):
        dispute = self._alice_dispute(db, conflict_match, alice)

        investigating = resolve_dispute(db, dispute.dispute_id, "investigate", ADMIN_ID, notes="looking")
        assert investigating.status == DisputeStatus.INVESTIGATING
        assert investigating.resolved_by is None

        resolved = resolve_dispute(db, dispute.dispute_id, "resolve", ADMIN_ID, notes="fine")
        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.resolved_by == ADMIN_ID
        assert resolved.admin_notes == "looking\nfine"

    def test_dismiss_closes(self, db, conflict_match, alice):
        dispute = self._alice_dispute(db, conflict_match, alice)
        resolve_dispute(db, dispute.dispute_id, "dismiss", ADMIN_ID)

        with pytest.raises(DisputeAlreadyClosed):
            resolve_dispute(db, dispute.dispute_id, "resolve", ADMIN_ID)

    def test_resolution_moves_no_money(self, db, conflict_match, alice, bob):
        dispute = self._alice_dispute(db, conflict_match, alice)
        resolve_dispute(db, dispute.dispute_id, "resolve", ADMIN_ID)

        assert get_match(db, conflict_match.match_id).status == MatchStatus.CONFLICT
        assert balance_of(db, alice.user_id) == 950
        assert balance_of(db, bob.user_id) == 950

    def test_take_action_needs_action(self, db, conflict_match, alice):
        dispute = self._alice_dispute(db, conflict_match, alice)
        with pytest.raises(ValidationError):
            resolve_dispute(db, dispute.dispute_id, "take_action", ADMIN_ID)
        with pytest.raises(ValidationError):
            resolve_dispute(db, dispute.dispute_id, "take_action", ADMIN_ID, action_taken="exile")

    def test_warning_does_not_flag(self, db, conflict_match, alice):
        dispute = self._alice_dispute(db, conflict_match, alice)
        resolved = resolve_dispute(db, dispute.dispute_id, "take_action", ADMIN_ID, action_taken="warning")

        assert resolved.action_taken == ActionTaken.WARNING
        assert db.get_user(alice.user_id).flagged is False

    def test_permanent_ban_blocks_play(self, db, conflict_match, alice, notifier):
        dispute = self._alice_dispute(db, conflict_match, alice)
        resolve_dispute(
            db, dispute.dispute_id, "take_action", ADMIN_ID,
            notes="fabricated proof", action_taken=ActionTaken.PERMANENT_BAN, notifier=notifier,
        )

        user = db.get_user(alice.user_id)
        assert user.flagged is True
        assert user.is_banned is True
        assert user.ban_reason == "fabricated proof"
        assert [n.event_type for n in notifier.sent] == ["admin_action"]

        with pytest.raises(AccountBanned):
            create_match(db, alice.user_id, 10, "ROOM-2")

    def test_temporary_ban_flags_only(self, db, conflict_match, alice):
        dispute = self._alice_dispute(db, conflict_match, alice)
        resolve_dispute(db, dispute.dispute_id, "take_action", ADMIN_ID, action_taken="temporary_ban")

        user = db.get_user(alice.user_id)
        assert user.flagged is True
        assert user.is_banned is False

    def test_review_is_audited(self, db, conflict_match, alice):
        dispute = self._alice_dispute(db, conflict_match, alice)
        resolve_dispute(db, dispute.dispute_id, "dismiss", ADMIN_ID)

        actions = db.list_admin_actions(target_type="dispute", target_id=str(dispute.dispute_id))
        assert [a.action for a in actions] == ["dispute_dismiss"]

    def test_unknown_dispute(self, db):
        with pytest.raises(DisputeNotFound):
            resolve_dispute(db, 999999, "resolve", ADMIN_ID)

    def test_unknown_action(self, db, conflict_match, alice):
        dispute = self._alice_dispute(db, conflict_match, alice)
        with pytest.raises(ValidationError):
            resolve_dispute(db, dispute.dispute_id, "escalate", ADMIN_ID)
