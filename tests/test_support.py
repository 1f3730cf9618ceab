"""
Tests for the supporting modules.

Tests cover:
1. Notification rendering and best-effort dispatch
2. Evidence store references
3. Formatting and validation helpers
4. Admin console screens
5. Telegram delivery task handling
"""
import asyncio

import pytest

from admin_dashboard import AdminDashboard
from evidence import LocalEvidenceStore, EvidenceRejected
from ledger import request_withdrawal
from notifications import (
    Notification,
    LoggingNotifier,
    TelegramNotifier,
    dispatch,
    MATCH_WON,
    BALANCE_ADJUSTED,
)
from platform_config import platform_cut_for, referral_reward_for
from utils import (
    format_coins,
    format_signed_coins,
    format_duration_minutes,
    truncate_id,
    is_valid_entry_fee,
    is_valid_amount,
    is_valid_room_code,
    sanitize_text,
)


class TestNotifications:
    """Tests for notification messages and delivery."""

    def test_render_win(self):
        message = Notification(1, MATCH_WON, 90, "match_abc").render()
        assert "90 coins" in message
        assert "match_abc" in message

    def test_render_debit_adjustment(self):
        message = Notification(1, BALANCE_ADJUSTED, -300, "tx_1").render()
        assert "-300 coins" in message

    def test_dispatch_survives_a_broken_sink(self):
        class BrokenNotifier:
            def send(self, notification):
                raise ConnectionError("bot offline")

        dispatch(BrokenNotifier(), [Notification(1, MATCH_WON, 90)])

    def test_dispatch_without_notifier(self):
        dispatch(None, [Notification(1, MATCH_WON, 90)])

    def test_logging_notifier_keeps_history(self):
        notifier = LoggingNotifier()
        dispatch(notifier, [Notification(1, MATCH_WON, 90), Notification(2, MATCH_WON, 10)])
        assert [n.user_id for n in notifier.sent] == [1, 2]

    def test_telegram_delivery_held_until_sent(self, db, alice):
        class RecordingBot:
            def __init__(self):
                self.messages = []

            async def send_message(self, chat_id, text, parse_mode=None):
                await asyncio.sleep(0)
                self.messages.append((chat_id, text))

        with db.transaction() as cursor:
            cursor.execute("UPDATE users SET telegram_id = ? WHERE user_id = ?", (5551, alice.user_id))
        notifier = TelegramNotifier(db, bot_token="123456:TEST-TOKEN")
        notifier.bot = RecordingBot()

        async def from_inside_the_api():
            notifier.send(Notification(alice.user_id, MATCH_WON, 90, "match_abc"))
            assert len(notifier._pending) == 1
            await asyncio.gather(*notifier._pending)
            await asyncio.sleep(0)

        asyncio.run(from_inside_the_api())

        assert notifier._pending == set()
        assert notifier.bot.messages[0][0] == 5551
        assert "match_abc" in notifier.bot.messages[0][1]

    def test_telegram_skips_unlinked_users(self, db, alice):
        notifier = TelegramNotifier(db, bot_token="123456:TEST-TOKEN")
        notifier.send(Notification(alice.user_id, MATCH_WON, 90))
        assert notifier._pending == set()


class TestEvidenceStore:
    """Tests for the local screenshot store."""

    def test_put_and_exists(self, tmp_path):
        store = LocalEvidenceStore(str(tmp_path))
        reference = store.put(b"image-bytes", ".png")

        assert reference.startswith("evidence/")
        assert reference.endswith(".png")
        assert store.exists(reference)

    def test_unknown_reference(self, tmp_path):
        store = LocalEvidenceStore(str(tmp_path))
        assert not store.exists("evidence/" + "a" * 64 + ".png")
        assert not store.exists("../etc/passwd")

    def test_rejects_bad_uploads(self, tmp_path):
        store = LocalEvidenceStore(str(tmp_path))
        with pytest.raises(EvidenceRejected):
            store.put(b"", ".png")
        with pytest.raises(EvidenceRejected):
            store.put(b"data", ".exe")


class TestHelpers:
    """Tests for money math, formatting and validation."""

    @pytest.mark.parametrize("pot,cut,reward", [(100, 10, 1), (104, 10, 1), (2, 0, 0), (40, 4, 0), (1000, 100, 10)])
    def test_cut_and_reward(self, pot, cut, reward):
        assert platform_cut_for(pot) == cut
        assert referral_reward_for(pot) == reward

    def test_format_coins(self):
        assert format_coins(1) == "1 coin"
        assert format_coins(1500) == "1,500 coins"
        assert format_signed_coins(90) == "+90 coins"
        assert format_signed_coins(-50) == "-50 coins"

    def test_format_duration(self):
        assert format_duration_minutes(45) == "45m"
        assert format_duration_minutes(95) == "1h 35m"

    def test_truncate_id(self):
        assert truncate_id("short") == "short"
        assert truncate_id("match_0123456789ab") == "match_01234..."

    @pytest.mark.parametrize("fee,valid", [(1, True), (50, True), (0, False), (-1, False), (2.0, False), (True, False)])
    def test_entry_fee(self, fee, valid):
        assert is_valid_entry_fee(fee)[0] is valid

    def test_entry_fee_cap(self):
        assert is_valid_entry_fee(100, max_fee=100)[0]
        assert not is_valid_entry_fee(101, max_fee=100)[0]

    @pytest.mark.parametrize("amount,valid", [(10, True), (9, False), (1001, False), (10.0, False), (False, False)])
    def test_amount_bounds(self, amount, valid):
        assert is_valid_amount(amount, max_amount=1000, min_amount=10)[0] is valid

    def test_room_code(self):
        assert is_valid_room_code("ROOM-1")[0]
        assert not is_valid_room_code("abc")[0]
        assert not is_valid_room_code("room code")[0]

    def test_sanitize_text(self):
        assert sanitize_text("  hello\x00 world  ") == "hello world"
        assert sanitize_text("") == ""


class TestAdminDashboard:
    """Tests for the console screens that need no menu loop."""

    def test_summary_screen(self, db, live_match, capsys):
        AdminDashboard(9000, db=db).view_platform_summary()
        output = capsys.readouterr().out
        assert "Escrow Held" in output
        assert "CONSERVATION CHECK FAILED" not in output

    def test_reconcile_screen(self, db, alice, capsys, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt="": str(alice.user_id))
        AdminDashboard(9000, db=db).reconcile_user()
        output = capsys.readouterr().out
        assert "1,000 coins" in output
        assert "+0 coins" in output

    def test_conflict_screen(self, db, conflict_match, capsys):
        AdminDashboard(9000, db=db).view_conflict_matches()
        assert conflict_match.match_id in capsys.readouterr().out

    def test_pending_transactions_screen(self, db, alice, capsys):
        entry = request_withdrawal(db, alice.user_id, 100, "upi:alice@bank")
        AdminDashboard(9000, db=db).view_pending_transactions()
        output = capsys.readouterr().out
        assert entry.entry_id in output
        assert "withdrawal" in output
