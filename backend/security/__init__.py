"""Admin audit trail and dispute tracking for Coinduel."""
from .audit import AdminActionLog, SYSTEM_ACTOR_ID, dispute_action
from .disputes import (
    record_dispute,
    try_record_dispute,
    list_disputes,
    dispute_statistics,
    calculate_risk_score,
    severity_for_cancel_reason,
)

__all__ = [
    "AdminActionLog",
    "SYSTEM_ACTOR_ID",
    "dispute_action",
    "record_dispute",
    "try_record_dispute",
    "list_disputes",
    "dispute_statistics",
    "calculate_risk_score",
    "severity_for_cancel_reason",
]
