"""
Player cancel requests and their admin review.

A request never moves money by itself. Approval refunds the match in the
same transaction that marks the request approved.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional, Union

from database import (
    Database,
    CancelRequest,
    CancelReason,
    RequestStatus,
    MatchStatus,
    DisputeType,
)
from errors import (
    ValidationError,
    InvalidDecision,
    NotParticipant,
    MatchAlreadyTerminal,
    DuplicatePendingRequest,
    CancelRequestNotFound,
    RequestAlreadyReviewed,
)
from notifications import dispatch
from security import AdminActionLog, try_record_dispute, severity_for_cancel_reason
from security.audit import CANCEL_REQUEST_APPROVED, CANCEL_REQUEST_REJECTED
from utils import sanitize_text
from .refunds import apply_refund
from .state import load_match

logger = logging.getLogger(__name__)

APPROVE_DECISIONS = {"approve", "approved"}
REJECT_DECISIONS = {"reject", "rejected"}


def _parse_reason(reason: Union[CancelReason, str]) -> CancelReason:
    if isinstance(reason, CancelReason):
        return reason
    try:
        return CancelReason(str(reason).lower())
    except ValueError:
        valid = ", ".join(r.value for r in CancelReason)
        raise ValidationError(f"Invalid cancel reason. Must be one of: {valid}")


def request_cancellation(
    db: Database,
    match_id: str,
    requested_by: int,
    reason: Union[CancelReason, str],
    evidence: Optional[str] = None,
) -> CancelRequest:
    """Ask an admin to cancel a match.

    Raises:
        NotParticipant, MatchAlreadyTerminal, DuplicatePendingRequest,
        MatchNotFound, ValidationError
    """
    reason = _parse_reason(reason)

    def _request(cursor):
        match = load_match(db, cursor, match_id)
        if not match.is_participant(requested_by):
            raise NotParticipant()
        if match.is_terminal:
            raise MatchAlreadyTerminal(f"Match is already {match.status.value}")
        if db.get_pending_cancel_request(match_id, cursor):
            raise DuplicatePendingRequest()

        request = CancelRequest(
            request_id=f"cancel_{uuid.uuid4().hex[:12]}",
            match_id=match_id,
            requested_by=requested_by,
            reason=reason,
            evidence=evidence or None,
        )
        # The partial unique index backs up the check above
        db.insert_cancel_request(cursor, request)
        return request

    request = db.atomic(_request, label="request cancellation")
    logger.info(f"[CANCEL] Request {request.request_id} on match {match_id} by user {requested_by} ({reason.value})")

    severity = severity_for_cancel_reason(reason)
    try_record_dispute(
        db,
        user_id=requested_by,
        dispute_type=DisputeType.CANCEL_REQUEST,
        description=f"Cancel request for match {match_id}: {reason.value}",
        severity=severity,
        match_id=match_id,
        evidence={"request_id": request.request_id, "reason": reason.value, "evidence": request.evidence},
    )
    return request


def resolve_cancel_request(
    db: Database,
    request_id: str,
    decision: str,
    admin_id: int,
    note: Optional[str] = None,
    notifier=None,
) -> CancelRequest:
    """Approve or reject a pending cancel request.

    On approval the match is refunded (unless it already reached a terminal
    state some other way) in the same transaction as the status change.

    Raises:
        InvalidDecision, CancelRequestNotFound, RequestAlreadyReviewed
    """
    decision = (decision or "").lower()
    if decision in APPROVE_DECISIONS:
        approve = True
    elif decision in REJECT_DECISIONS:
        approve = False
    else:
        raise InvalidDecision("Decision must be 'approve' or 'reject'")
    note = sanitize_text(note or "") or None

    outcome = {}

    def _resolve(cursor):
        request = db.get_cancel_request(request_id, cursor)
        if not request:
            raise CancelRequestNotFound()
        if request.status != RequestStatus.PENDING:
            raise RequestAlreadyReviewed()

        outcome["notifications"] = []
        outcome["refunded"] = False
        if approve:
            match = load_match(db, cursor, request.match_id)
            if not match.is_terminal:
                outcome["notifications"] = apply_refund(
                    db, cursor, match, MatchStatus.CANCELLED,
                    reason=f"cancel request {request.request_id} ({request.reason.value})",
                )
                outcome["refunded"] = True

        request.status = RequestStatus.APPROVED if approve else RequestStatus.REJECTED
        request.reviewed_by = admin_id
        request.review_note = note
        request.reviewed_at = datetime.utcnow()
        db.review_cancel_request(cursor, request)
        return request

    request = db.atomic(_resolve, label="resolve cancel request")
    logger.info(
        f"[CANCEL] Request {request_id} {request.status.value} by admin {admin_id}"
        + (" (match refunded)" if outcome["refunded"] else "")
    )

    AdminActionLog(db).record(
        admin_id,
        CANCEL_REQUEST_APPROVED if approve else CANCEL_REQUEST_REJECTED,
        "cancel_request",
        request_id,
        {"match_id": request.match_id, "note": note, "refunded": outcome["refunded"]},
    )
    dispatch(notifier, outcome["notifications"])
    return request
