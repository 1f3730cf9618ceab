"""
Notification sink for match and ledger events.

Notifications are fire-and-forget: they are dispatched only after the
financial effect has committed, and a failing sink never undoes it.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Iterable, List, Set

from telegram import Bot

from platform_config import BOT_TOKEN
from utils import format_coins, format_signed_coins

logger = logging.getLogger(__name__)

# Event types
MATCH_JOINED = "match_joined"
MATCH_WON = "match_won"
MATCH_LOST = "match_lost"
MATCH_REFUNDED = "match_refunded"
MATCH_CONFLICT = "match_conflict"
REFERRAL_REWARD = "referral_reward"
ADMIN_ACTION = "admin_action"
BALANCE_ADJUSTED = "balance_adjusted"
DEPOSIT_APPROVED = "deposit_approved"
DEPOSIT_REJECTED = "deposit_rejected"
WITHDRAWAL_APPROVED = "withdrawal_approved"
WITHDRAWAL_REJECTED = "withdrawal_rejected"

MESSAGES = {
    MATCH_JOINED: "🎮 *Opponent joined!*\n\nMatch `{ref}` is live. Pot: {amount}",
    MATCH_WON: "🎉 *You won!*\n\n{amount} credited for match `{ref}`",
    MATCH_LOST: "Match `{ref}` settled. Better luck next time!",
    MATCH_REFUNDED: "↩️ *Match refunded*\n\n{amount} returned for match `{ref}`",
    MATCH_CONFLICT: "⚠️ *Results disagree*\n\nMatch `{ref}` is waiting for an admin review.",
    REFERRAL_REWARD: "💸 *Referral reward*\n\n{amount} earned from match `{ref}`",
    ADMIN_ACTION: "🛡 An admin reviewed `{ref}`.",
    BALANCE_ADJUSTED: "💰 Your balance was adjusted by {amount} (`{ref}`)",
    DEPOSIT_APPROVED: "✅ *Deposit approved*\n\n{amount} added to your balance (`{ref}`)",
    DEPOSIT_REJECTED: "❌ Your deposit of {amount} was rejected (`{ref}`)",
    WITHDRAWAL_APPROVED: "✅ *Withdrawal approved*\n\n{amount} will be paid out shortly (`{ref}`)",
    WITHDRAWAL_REJECTED: "↩️ Your withdrawal of {amount} was rejected and returned to your balance (`{ref}`)",
}


@dataclass
class Notification:
    """One event for one user."""
    user_id: int
    event_type: str
    amount: int = 0
    reference_id: Optional[str] = None

    def render(self) -> str:
        template = MESSAGES.get(self.event_type, "{event}: {ref}")
        if self.event_type == BALANCE_ADJUSTED:
            amount = format_signed_coins(self.amount)
        else:
            amount = format_coins(self.amount)
        return template.format(
            amount=amount,
            ref=self.reference_id or "-",
            event=self.event_type,
        )


class LoggingNotifier:
    """Sink used when no bot token is configured. Also handy in tests."""

    def __init__(self):
        self.sent: List[Notification] = []

    def send(self, notification: Notification):
        self.sent.append(notification)
        logger.info(
            f"[NOTIFY] user={notification.user_id} {notification.event_type} "
            f"amount={notification.amount} ref={notification.reference_id}"
        )


class TelegramNotifier:
    """Delivers notifications through the Telegram bot.

    Users without a linked telegram_id are skipped.
    """

    def __init__(self, db, bot_token: str = BOT_TOKEN):
        self.db = db
        self.bot = Bot(token=bot_token)
        self._pending: Set[asyncio.Task] = set()  # Strong refs until delivery finishes

    async def _deliver(self, chat_id: int, message: str, parse_mode: str = "Markdown") -> bool:
        try:
            await self.bot.send_message(chat_id=chat_id, text=message, parse_mode=parse_mode)
            logger.info(f"Notification sent to Telegram chat {chat_id}")
            return True
        except Exception as e:
            logger.warning(f"Failed to send notification to Telegram chat {chat_id}: {e}")
            return False

    def send(self, notification: Notification):
        user = self.db.get_user(notification.user_id)
        if not user or not user.telegram_id:
            logger.debug(f"[NOTIFY] user {notification.user_id} has no linked chat, skipping")
            return

        coro = self._deliver(user.telegram_id, notification.render())
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            # Inside the API: schedule and move on
            task = loop.create_task(coro)
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        else:
            asyncio.run(coro)


def get_notifier(db):
    """TelegramNotifier when a bot token is configured, LoggingNotifier otherwise."""
    if BOT_TOKEN:
        return TelegramNotifier(db)
    return LoggingNotifier()


def dispatch(notifier, notifications: Iterable[Notification]):
    """Send each notification. Sink failures are logged and swallowed."""
    if notifier is None:
        return
    for notification in notifications:
        try:
            notifier.send(notification)
        except Exception as e:
            logger.warning(
                f"[NOTIFY] Failed to deliver {notification.event_type} to user {notification.user_id}: {e}"
            )
