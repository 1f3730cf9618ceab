"""
Admin action audit trail.
Every privileged operation leaves an immutable record of who did what to which target.
"""
import logging
from typing import Optional, List

from database import Database, AdminAction

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = 0  # Used for automated actions such as the idle reaper

# Action names
MATCH_OVERRIDE = "match_override"
CANCEL_REQUEST_APPROVED = "cancel_request_approved"
CANCEL_REQUEST_REJECTED = "cancel_request_rejected"
BALANCE_ADJUSTMENT = "balance_adjustment"
IDLE_REAP = "idle_reap"
TRANSACTION_APPROVED = "transaction_approved"
TRANSACTION_REJECTED = "transaction_rejected"


def dispute_action(action: str) -> str:
    """Audit action name for a dispute review, e.g. 'dispute_take_action'."""
    return f"dispute_{action}"


class AdminActionLog:
    """Audit log for admin actions, backed by the admin_actions table."""

    def __init__(self, db: Database):
        self.db = db

    def record(
        self,
        admin_id: int,
        action: str,
        target_type: str,
        target_id,
        details: Optional[dict] = None,
    ) -> Optional[AdminAction]:
        """Record an admin action.

        Called after the action itself has committed. Failing to write the
        record is logged and never raised.

        Args:
            admin_id: Acting admin (SYSTEM_ACTOR_ID for automated actions)
            action: Action name
            target_type: match, user, transaction, cancel_request or dispute
            target_id: ID of the target
            details: Extra context (JSON-serializable)

        Returns:
            The stored AdminAction, or None if it could not be written
        """
        entry = AdminAction(
            action_id=None,
            admin_id=admin_id,
            action=action,
            target_type=target_type,
            target_id=str(target_id),
            details=details or {},
        )
        try:
            with self.db.transaction() as cursor:
                self.db.insert_admin_action(cursor, entry)
        except Exception as e:
            logger.error(f"Failed to write admin action {action} on {target_type}:{target_id}: {e}", exc_info=True)
            return None

        logger.info(f"[AUDIT] {action} | admin={admin_id} | {target_type}={target_id}")
        return entry

    def recent(
        self,
        limit: int = 100,
        admin_id: Optional[int] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> List[AdminAction]:
        """Get recent admin actions, newest first."""
        return self.db.list_admin_actions(
            limit=limit, admin_id=admin_id, target_type=target_type, target_id=target_id
        )
