"""
Admin Dashboard for Coinduel

Console tool for the review queues and the ledger:
- Conflict matches and overrides
- Pending cancel requests
- Disputes
- Idle matches and the reaper
- Balance adjustments, reconciliation and the platform summary
- Pending deposits and withdrawals
"""
import logging
import os

from dotenv import load_dotenv
from tabulate import tabulate

from database import Database, MatchStatus, RequestStatus, DisputeStatus
from errors import MatchError
from ledger import (
    adjust_balance,
    reconcile_account,
    platform_summary,
    list_pending_transactions,
    review_transaction,
)
from matches import (
    override_match,
    resolve_cancel_request,
    resolve_dispute,
    reap_idle_matches,
    list_idle_matches,
)
from notifications import get_notifier
from security import AdminActionLog, list_disputes, dispute_statistics
from utils import format_coins, format_signed_coins, format_timestamp, format_duration_minutes, truncate_id

load_dotenv()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class AdminDashboard:
    """Interactive admin console."""

    def __init__(self, admin_id: int, db: Database = None):
        self.admin_id = admin_id
        self.db = db or Database()
        self.notifier = get_notifier(self.db)
        self.audit = AdminActionLog(self.db)

    def main_menu(self):
        """Display main menu."""
        while True:
            print("\n" + "="*60)
            print("🔧 COINDUEL ADMIN DASHBOARD")
            print("="*60)
            print("\n⚔️  MATCHES:")
            print("  1. View Conflict Matches")
            print("  2. Override Match (winner or draw)")
            print("\n📨 CANCEL REQUESTS:")
            print("  3. View Pending Cancel Requests")
            print("  4. Approve/Reject Cancel Request")
            print("\n🚩 DISPUTES:")
            print("  5. View Open Disputes")
            print("  6. Resolve Dispute")
            print("\n⏱  IDLE MATCHES:")
            print("  7. Preview Idle Matches")
            print("  8. Run Idle Reaper Now")
            print("\n💰 LEDGER:")
            print("  9. Adjust User Balance")
            print("  10. Reconcile User Balance")
            print("  11. Platform Summary")
            print("  12. Recent Admin Actions")
            print("\n🏦 WALLET:")
            print("  13. View Pending Deposits/Withdrawals")
            print("  14. Approve/Reject Transaction")
            print("\n  0. Exit")
            print("="*60)

            choice = input("\nSelect option: ").strip()

            try:
                if choice == "1":
                    self.view_conflict_matches()
                elif choice == "2":
                    self.override_match()
                elif choice == "3":
                    self.view_cancel_requests()
                elif choice == "4":
                    self.review_cancel_request()
                elif choice == "5":
                    self.view_disputes()
                elif choice == "6":
                    self.resolve_dispute()
                elif choice == "7":
                    self.view_idle_matches()
                elif choice == "8":
                    self.run_reaper()
                elif choice == "9":
                    self.adjust_balance()
                elif choice == "10":
                    self.reconcile_user()
                elif choice == "11":
                    self.view_platform_summary()
                elif choice == "12":
                    self.view_admin_actions()
                elif choice == "13":
                    self.view_pending_transactions()
                elif choice == "14":
                    self.review_transaction()
                elif choice == "0":
                    print("\n👋 Exiting admin dashboard...")
                    break
                else:
                    print("\n❌ Invalid option")
            except MatchError as e:
                print(f"\n❌ {e.message}")
            except Exception as e:
                logger.error(f"Dashboard action failed: {e}", exc_info=True)
                print(f"\n❌ Error: {e}")

            input("\nPress Enter to continue...")

    # === Matches ===

    def view_conflict_matches(self):
        print("\n⚔️  CONFLICT MATCHES")
        matches = self.db.list_matches(status=MatchStatus.CONFLICT, limit=100)
        if not matches:
            print("\n✅ No matches waiting for review")
            return

        data = [
            {
                "Match": m.match_id,
                "Room": m.room_code,
                "P1": f"{m.player1_id} ({m.player1_result.value})",
                "P2": f"{m.player2_id} ({m.player2_result.value})",
                "Pot": format_coins(m.pot),
                "Since": format_timestamp(m.updated_at),
            }
            for m in matches
        ]
        print("\n" + tabulate(data, headers="keys", tablefmt="grid"))

    def override_match(self):
        match_id = input("\nEnter Match ID: ").strip()
        winner = input("Enter winner user ID (or 'draw'): ").strip()
        reason = input("Enter reason: ").strip()

        confirm = input(f"\n⚠️  Override {match_id} -> {winner}? (yes/no): ").strip().lower()
        if confirm != "yes":
            print("Cancelled.")
            return

        match = override_match(self.db, match_id, winner, reason, self.admin_id, notifier=self.notifier)
        print(f"\n✅ Match {match.match_id} is now {match.status.value}")
        if match.winner_id:
            print(f"   Winner {match.winner_id} paid {format_coins(match.winnings)}")

    # === Cancel requests ===

    def view_cancel_requests(self):
        print("\n📨 PENDING CANCEL REQUESTS")
        requests = self.db.list_cancel_requests(RequestStatus.PENDING, limit=100)
        if not requests:
            print("\n✅ No pending requests")
            return

        data = [
            {
                "Request": r.request_id,
                "Match": r.match_id,
                "By": r.requested_by,
                "Reason": r.reason.value,
                "Evidence": "yes" if r.evidence else "no",
                "Created": format_timestamp(r.created_at),
            }
            for r in requests
        ]
        print("\n" + tabulate(data, headers="keys", tablefmt="grid"))

    def review_cancel_request(self):
        request_id = input("\nEnter Request ID: ").strip()
        decision = input("Decision (approve/reject): ").strip().lower()
        note = input("Note (optional): ").strip()

        request = resolve_cancel_request(
            self.db, request_id, decision, self.admin_id, note or None, notifier=self.notifier
        )
        print(f"\n✅ Request {request.request_id} {request.status.value}")

    # === Disputes ===

    def view_disputes(self):
        print("\n🚩 OPEN DISPUTES")
        stats = dispute_statistics(self.db)
        print(
            f"Total: {stats['total_disputes']} | Avg risk: {stats['average_risk_score']} | "
            f"High risk: {stats['high_risk_count']} | Auto-flagged: {stats['auto_flagged_count']}"
        )

        disputes = list_disputes(self.db, status=DisputeStatus.OPEN, limit=50)
        disputes += list_disputes(self.db, status=DisputeStatus.INVESTIGATING, limit=50)
        if not disputes:
            print("\n✅ No open disputes")
            return

        data = [
            {
                "ID": d.dispute_id,
                "User": d.user_id,
                "Type": d.dispute_type.value,
                "Match": truncate_id(d.match_id or "-"),
                "Severity": d.severity.value,
                "Risk": d.risk_score,
                "Flag": "🚩" if d.auto_flagged else "",
                "Status": d.status.value,
            }
            for d in disputes
        ]
        print("\n" + tabulate(data, headers="keys", tablefmt="grid"))

    def resolve_dispute(self):
        dispute_id = input("\nEnter Dispute ID: ").strip()
        action = input("Action (resolve/dismiss/investigate/take_action): ").strip().lower()
        action_taken = None
        if action == "take_action":
            action_taken = input(
                "Action taken (warning/temporary_ban/permanent_ban/account_restriction): "
            ).strip().lower()
        notes = input("Notes: ").strip()

        dispute = resolve_dispute(
            self.db, int(dispute_id), action, self.admin_id,
            notes=notes or None, action_taken=action_taken, notifier=self.notifier,
        )
        print(f"\n✅ Dispute #{dispute.dispute_id} is now {dispute.status.value}")

    # === Idle matches ===

    def view_idle_matches(self):
        print("\n⏱  IDLE MATCHES")
        idle = list_idle_matches(self.db)
        if not idle:
            print("\n✅ Nothing idle past the threshold")
            return

        data = [
            {
                "Match": m.match_id,
                "Status": m.status.value,
                "Players": ", ".join(str(p) for p in m.players()),
                "Stake": format_coins(m.entry_fee),
                "Idle": format_duration_minutes(minutes),
            }
            for m, minutes in idle
        ]
        print("\n" + tabulate(data, headers="keys", tablefmt="grid"))

    def run_reaper(self):
        confirm = input("\n⚠️  Refund and abandon all idle matches? (yes/no): ").strip().lower()
        if confirm != "yes":
            print("Cancelled.")
            return

        reaped = reap_idle_matches(self.db, notifier=self.notifier)
        if not reaped:
            print("\n✅ Nothing to reap")
            return

        data = [
            {
                "Match": r.match_id,
                "Refunded": ", ".join(str(p) for p in r.refunded_players),
                "Stake": format_coins(r.entry_fee),
                "Idle": format_duration_minutes(r.idle_minutes),
            }
            for r in reaped
        ]
        print("\n" + tabulate(data, headers="keys", tablefmt="grid"))

    # === Ledger ===

    def adjust_balance(self):
        user_id = input("\nEnter User ID: ").strip()
        direction = input("Direction (credit/debit): ").strip().lower()
        amount = input("Amount (coins): ").strip()
        reason = input("Reason: ").strip()

        try:
            user_id, amount = int(user_id), int(amount)
        except ValueError:
            print("\n❌ User ID and amount must be whole numbers")
            return

        confirm = input(f"\n⚠️  {direction} {format_coins(amount)} for user {user_id}? (yes/no): ").strip().lower()
        if confirm != "yes":
            print("Cancelled.")
            return

        entry = adjust_balance(self.db, self.admin_id, user_id, amount, direction, reason, notifier=self.notifier)
        print(f"\n✅ Posted {entry.entry_id}. New balance: {format_coins(self.db.get_user(user_id).balance)}")

    def reconcile_user(self):
        user_id = int(input("\nEnter User ID: ").strip())
        result = reconcile_account(self.db, user_id)
        print("\n" + tabulate([{
            "User": result.user_id,
            "Stored": format_coins(result.stored_balance),
            "Ledger": format_coins(result.ledger_balance),
            "Difference": format_signed_coins(result.difference),
            "OK": "✅" if result.ok else "❌",
        }], headers="keys", tablefmt="grid"))

    def view_platform_summary(self):
        summary = platform_summary(self.db)
        rows = [[key.replace("_", " ").title(), value] for key, value in summary.items()]
        print("\n" + tabulate(rows, headers=["Metric", "Value"], tablefmt="grid"))
        if not summary["conserved"]:
            print("\n🚨 CONSERVATION CHECK FAILED - investigate before settling anything else")

    def view_admin_actions(self):
        actions = self.audit.recent(limit=30)
        if not actions:
            print("\nNo admin actions recorded")
            return

        data = [
            {
                "When": format_timestamp(a.timestamp),
                "Admin": a.admin_id,
                "Action": a.action,
                "Target": f"{a.target_type}:{truncate_id(a.target_id)}",
            }
            for a in actions
        ]
        print("\n" + tabulate(data, headers="keys", tablefmt="grid"))

    # === Wallet ===

    def view_pending_transactions(self):
        print("\n🏦 PENDING DEPOSITS AND WITHDRAWALS")
        pending = list_pending_transactions(self.db)
        if not pending:
            print("\n✅ Nothing waiting for review")
            return

        data = [
            {
                "ID": e.entry_id,
                "Type": e.kind.value,
                "User": e.user_id,
                "Amount": format_coins(e.amount),
                "Reference": truncate_id(e.external_ref or "-", 24),
                "Requested": format_timestamp(e.created_at),
            }
            for e in pending
        ]
        print("\n" + tabulate(data, headers="keys", tablefmt="grid"))

    def review_transaction(self):
        entry_id = input("\nEnter Transaction ID: ").strip()
        decision = input("Decision (approve/reject): ").strip().lower()
        note = input("Note (optional): ").strip()

        entry = review_transaction(self.db, self.admin_id, entry_id, decision, note, notifier=self.notifier)
        print(f"\n✅ {entry.kind.value.title()} {entry.entry_id} {entry.status.value}")


def main():
    print("\n" + "="*60)
    print("🔧 COINDUEL ADMIN DASHBOARD")
    print("="*60)

    admin_id = os.getenv("ADMIN_ID")
    if not admin_id or not admin_id.isdigit():
        print("❌ ERROR: ADMIN_ID not set in .env file!")
        print("\nPlease add to your .env file:")
        print("   ADMIN_ID=<your admin user id>")
        return

    try:
        dashboard = AdminDashboard(int(admin_id))
        dashboard.main_menu()
    except KeyboardInterrupt:
        print("\n\n👋 Dashboard closed by user.")
    except Exception as e:
        logger.error(f"Dashboard failed: {e}", exc_info=True)
        print(f"\n❌ Dashboard error: {e}")


if __name__ == "__main__":
    main()
