"""
FastAPI web backend for Coinduel.

Identity comes from the auth gateway in front of this service as two
trusted headers: X-User-Id and X-Is-Admin. No credentials are checked here.
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
import asyncio

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from database import Database, Match, User, LedgerEntry, CancelRequest, DisputeEntry, AdminAction
from database import DisputeStatus, DisputeSeverity, DisputeType, RequestStatus
from errors import MatchError, ValidationError, AdminRequired
from evidence import LocalEvidenceStore, EvidenceRejected
from ledger import (
    list_ledger_entries,
    adjust_balance,
    reconcile_account,
    platform_summary,
    request_deposit,
    request_withdrawal,
    list_pending_transactions,
    review_transaction,
)
from matches import (
    create_match,
    join_match,
    submit_result,
    get_match,
    list_open_matches,
    request_cancellation,
    resolve_cancel_request,
    override_match,
    resolve_dispute,
    reap_idle_matches,
    list_idle_matches,
    reaper_loop,
)
from notifications import get_notifier
from platform_config import CORS_ORIGINS, REAPER_INTERVAL_SECONDS
from referrals import register_account, get_referral_stats
from security import AdminActionLog, list_disputes, dispute_statistics

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Collaborators
db = Database()
notifier = get_notifier(db)
evidence_store = LocalEvidenceStore()

CONTENT_TYPE_SUFFIXES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    reaper_task = asyncio.create_task(reaper_loop(db, REAPER_INTERVAL_SECONDS, notifier))
    yield
    reaper_task.cancel()


# FastAPI app
app = FastAPI(title="Coinduel API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],  # Only needed methods
    allow_headers=["*"],
)


@app.exception_handler(MatchError)
async def match_error_handler(request: Request, exc: MatchError):
    """Named engine errors carry their own status and user-facing message."""
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message})


# ===== MODELS =====

class RegisterRequest(BaseModel):
    username: str
    referral_code: Optional[str] = None
    telegram_id: Optional[int] = None


class CreateMatchRequest(BaseModel):
    entry_fee: int
    room_code: str


class SubmitResultRequest(BaseModel):
    result: str  # "win" or "loss"
    evidence: Optional[str] = None  # Reference from POST /api/evidence


class CancelMatchRequest(BaseModel):
    match_id: str
    reason: str
    evidence: Optional[str] = None


class ReviewCancelRequest(BaseModel):
    note: Optional[str] = None


class OverrideRequest(BaseModel):
    winner: str  # Winning user ID, or "draw"
    reason: str


class ResolveDisputeRequest(BaseModel):
    action: str  # resolve | dismiss | investigate | take_action
    notes: Optional[str] = None
    action_taken: Optional[str] = None


class AdjustBalanceRequest(BaseModel):
    amount: int
    direction: str  # credit | debit
    reason: str


class ReapRequest(BaseModel):
    threshold_minutes: Optional[int] = None


class DepositRequest(BaseModel):
    amount: int
    proof: str  # Payment proof reference (evidence upload or bank reference)


class WithdrawRequest(BaseModel):
    amount: int
    payout_to: str


class ReviewTransactionRequest(BaseModel):
    note: Optional[str] = None


class AccountResponse(BaseModel):
    user_id: int
    username: str
    balance: int
    referral_code: Optional[str]
    referred_by: Optional[int]
    flagged: bool
    is_banned: bool
    created_at: str


class MatchResponse(BaseModel):
    match_id: str
    player1_id: int
    player2_id: Optional[int]
    entry_fee: int
    pot: int
    platform_cut: int
    room_code: str
    status: str
    player1_result: Optional[str]
    player2_result: Optional[str]
    winner_id: Optional[int]
    abandon_reason: Optional[str]
    override_reason: Optional[str]
    overridden_by: Optional[int]
    created_at: str
    updated_at: str
    completed_at: Optional[str]


class LedgerEntryResponse(BaseModel):
    entry_id: str
    account: str  # "user:<id>" or "platform"
    kind: str
    direction: str
    amount: int
    status: str
    match_id: Optional[str]
    description: Optional[str]
    external_ref: Optional[str] = None
    reviewed_by: Optional[int] = None
    review_note: Optional[str] = None
    created_at: str


class CancelRequestResponse(BaseModel):
    request_id: str
    match_id: str
    requested_by: int
    reason: str
    status: str
    reviewed_by: Optional[int]
    review_note: Optional[str]
    created_at: str


class DisputeResponse(BaseModel):
    dispute_id: int
    user_id: int
    dispute_type: str
    match_id: Optional[str]
    description: str
    severity: str
    risk_score: int
    auto_flagged: bool
    evidence: dict
    status: str
    action_taken: str
    admin_notes: Optional[str]
    created_at: str


class AdminActionResponse(BaseModel):
    action_id: int
    admin_id: int
    action: str
    target_type: str
    target_id: str
    details: dict
    timestamp: str


# ===== HELPERS =====

def require_user(request: Request) -> int:
    """User ID supplied by the auth gateway, 401 if missing."""
    raw = request.headers.get("X-User-Id")
    if not raw:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail="Not authenticated.")


def is_admin(request: Request) -> bool:
    return request.headers.get("X-Is-Admin", "").lower() in ("1", "true", "yes")


def require_admin(request: Request) -> int:
    """Admin user ID, 401/403 if not authenticated as an admin."""
    user_id = require_user(request)
    if not is_admin(request):
        logger.warning(f"Non-admin user {user_id} attempted admin access")
        raise AdminRequired()
    return user_id


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def account_response(user: User) -> AccountResponse:
    return AccountResponse(
        user_id=user.user_id,
        username=user.username,
        balance=user.balance,
        referral_code=user.referral_code,
        referred_by=user.referred_by,
        flagged=user.flagged,
        is_banned=user.is_banned,
        created_at=user.created_at.isoformat(),
    )


def match_response(match: Match) -> MatchResponse:
    return MatchResponse(
        match_id=match.match_id,
        player1_id=match.player1_id,
        player2_id=match.player2_id,
        entry_fee=match.entry_fee,
        pot=match.pot,
        platform_cut=match.platform_cut,
        room_code=match.room_code,
        status=match.status.value,
        player1_result=match.player1_result.value if match.player1_result else None,
        player2_result=match.player2_result.value if match.player2_result else None,
        winner_id=match.winner_id,
        abandon_reason=match.abandon_reason,
        override_reason=match.override_reason,
        overridden_by=match.overridden_by,
        created_at=match.created_at.isoformat(),
        updated_at=match.updated_at.isoformat(),
        completed_at=_iso(match.completed_at),
    )


def ledger_entry_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        entry_id=entry.entry_id,
        account=f"user:{entry.user_id}" if entry.user_id is not None else "platform",
        kind=entry.kind.value,
        direction=entry.direction.value,
        amount=entry.amount,
        status=entry.status.value,
        match_id=entry.match_id,
        description=entry.description,
        external_ref=entry.external_ref,
        reviewed_by=entry.reviewed_by,
        review_note=entry.review_note,
        created_at=entry.created_at.isoformat(),
    )


def cancel_request_response(request: CancelRequest) -> CancelRequestResponse:
    return CancelRequestResponse(
        request_id=request.request_id,
        match_id=request.match_id,
        requested_by=request.requested_by,
        reason=request.reason.value,
        status=request.status.value,
        reviewed_by=request.reviewed_by,
        review_note=request.review_note,
        created_at=request.created_at.isoformat(),
    )


def dispute_response(dispute: DisputeEntry) -> DisputeResponse:
    return DisputeResponse(
        dispute_id=dispute.dispute_id,
        user_id=dispute.user_id,
        dispute_type=dispute.dispute_type.value,
        match_id=dispute.match_id,
        description=dispute.description,
        severity=dispute.severity.value,
        risk_score=dispute.risk_score,
        auto_flagged=dispute.auto_flagged,
        evidence=dispute.evidence,
        status=dispute.status.value,
        action_taken=dispute.action_taken.value,
        admin_notes=dispute.admin_notes,
        created_at=dispute.created_at.isoformat(),
    )


def admin_action_response(action: AdminAction) -> AdminActionResponse:
    return AdminActionResponse(
        action_id=action.action_id,
        admin_id=action.admin_id,
        action=action.action,
        target_type=action.target_type,
        target_id=action.target_id,
        details=action.details,
        timestamp=action.timestamp.isoformat(),
    )


def _check_evidence(reference: Optional[str]):
    if reference and not evidence_store.exists(reference):
        raise ValidationError("Unknown evidence reference. Upload it first.")


def _parse_enum(enum_cls, value: Optional[str], name: str):
    if not value:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} '{value}'")


# ===== API ENDPOINTS =====

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# === Accounts ===

@app.post("/api/accounts")
async def create_account(request: RegisterRequest) -> AccountResponse:
    """Register a player account (identity is verified upstream)."""
    user = register_account(db, request.username, request.referral_code, request.telegram_id)
    return account_response(user)


@app.get("/api/accounts/{user_id}")
async def get_account(user_id: int, http_request: Request) -> AccountResponse:
    caller = require_user(http_request)
    if caller != user_id:
        require_admin(http_request)

    user = db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return account_response(user)


@app.get("/api/accounts/{user_id}/referrals")
async def get_account_referrals(user_id: int, http_request: Request):
    caller = require_user(http_request)
    if caller != user_id:
        require_admin(http_request)
    return get_referral_stats(db, user_id)


# === Matches ===

@app.post("/api/matches")
async def create_match_endpoint(request: CreateMatchRequest, http_request: Request) -> MatchResponse:
    """Create a match and escrow the creator's stake."""
    user_id = require_user(http_request)
    try:
        match = create_match(db, user_id, request.entry_fee, request.room_code)
        return match_response(match)
    except (HTTPException, MatchError):
        raise
    except Exception as e:
        logger.error(f"Create match failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create match. Please try again.")


@app.get("/api/matches")
async def get_open_matches(limit: int = 50) -> List[MatchResponse]:
    """Matches waiting for an opponent."""
    return [match_response(m) for m in list_open_matches(db, limit=min(limit, 100))]


@app.get("/api/matches/{match_id}")
async def get_match_endpoint(match_id: str) -> MatchResponse:
    return match_response(get_match(db, match_id))


@app.post("/api/matches/{match_id}/join")
async def join_match_endpoint(match_id: str, http_request: Request) -> MatchResponse:
    """Join a waiting match and escrow the second stake."""
    user_id = require_user(http_request)
    try:
        match = join_match(db, match_id, user_id, notifier=notifier)
        return match_response(match)
    except (HTTPException, MatchError):
        raise
    except Exception as e:
        logger.error(f"Join match failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to join match. Please try again.")


@app.post("/api/matches/{match_id}/result")
async def submit_result_endpoint(match_id: str, request: SubmitResultRequest, http_request: Request) -> MatchResponse:
    """Report your own result. A win needs an evidence reference."""
    user_id = require_user(http_request)
    try:
        _check_evidence(request.evidence)
        match = submit_result(db, match_id, user_id, request.result, request.evidence, notifier=notifier)
        return match_response(match)
    except (HTTPException, MatchError):
        raise
    except Exception as e:
        logger.error(f"Submit result failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to submit result. Please try again.")


@app.post("/api/evidence")
async def upload_evidence(http_request: Request):
    """Store a raw screenshot body and return its reference."""
    require_user(http_request)
    content_type = http_request.headers.get("content-type", "").split(";")[0].strip().lower()
    suffix = CONTENT_TYPE_SUFFIXES.get(content_type)
    if not suffix:
        raise HTTPException(status_code=400, detail="Evidence must be a PNG, JPEG or WEBP image")

    data = await http_request.body()
    try:
        reference = evidence_store.put(data, suffix)
    except EvidenceRejected as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"reference": reference}


# === Cancellation ===

@app.post("/api/cancel-requests")
async def create_cancel_request(request: CancelMatchRequest, http_request: Request) -> CancelRequestResponse:
    user_id = require_user(http_request)
    _check_evidence(request.evidence)
    cancel_request = request_cancellation(db, request.match_id, user_id, request.reason, request.evidence)
    return cancel_request_response(cancel_request)


@app.get("/api/admin/cancel-requests")
async def get_pending_cancel_requests(http_request: Request, limit: int = 50) -> List[CancelRequestResponse]:
    require_admin(http_request)
    return [cancel_request_response(r) for r in db.list_cancel_requests(RequestStatus.PENDING, limit)]


@app.post("/api/admin/cancel-requests/{request_id}/{decision}")
async def review_cancel_request(
    request_id: str, decision: str, request: ReviewCancelRequest, http_request: Request
) -> CancelRequestResponse:
    """Approve (refund) or reject a pending cancel request."""
    admin_id = require_admin(http_request)
    try:
        cancel_request = resolve_cancel_request(
            db, request_id, decision, admin_id, request.note, notifier=notifier
        )
        return cancel_request_response(cancel_request)
    except (HTTPException, MatchError):
        raise
    except Exception as e:
        logger.error(f"Review cancel request failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to review cancel request. Please try again.")


# === Admin: overrides and disputes ===

@app.post("/api/admin/matches/{match_id}/override")
async def override_match_endpoint(match_id: str, request: OverrideRequest, http_request: Request) -> MatchResponse:
    """Declare a winner or a draw for a match."""
    admin_id = require_admin(http_request)
    try:
        match = override_match(db, match_id, request.winner, request.reason, admin_id, notifier=notifier)
        return match_response(match)
    except (HTTPException, MatchError):
        raise
    except Exception as e:
        logger.error(f"Override failed for match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to override match. Please try again.")


@app.get("/api/admin/disputes")
async def get_disputes(
    http_request: Request,
    status: Optional[str] = None,
    severity: Optional[str] = None,
    dispute_type: Optional[str] = None,
    min_risk: int = 0,
    limit: int = 50,
) -> List[DisputeResponse]:
    require_admin(http_request)
    disputes = list_disputes(
        db,
        status=_parse_enum(DisputeStatus, status, "status"),
        severity=_parse_enum(DisputeSeverity, severity, "severity"),
        dispute_type=_parse_enum(DisputeType, dispute_type, "dispute type"),
        min_risk=min_risk,
        limit=min(limit, 200),
    )
    return [dispute_response(d) for d in disputes]


@app.get("/api/admin/disputes/stats")
async def get_dispute_stats(http_request: Request):
    require_admin(http_request)
    return dispute_statistics(db)


@app.post("/api/admin/disputes/{dispute_id}")
async def resolve_dispute_endpoint(dispute_id: int, request: ResolveDisputeRequest, http_request: Request) -> DisputeResponse:
    admin_id = require_admin(http_request)
    dispute = resolve_dispute(
        db, dispute_id, request.action, admin_id,
        notes=request.notes, action_taken=request.action_taken, notifier=notifier,
    )
    return dispute_response(dispute)


# === Admin: reaper ===

@app.post("/api/admin/reap-idle")
async def reap_idle_endpoint(request: ReapRequest, http_request: Request):
    """Run an idle sweep now."""
    require_admin(http_request)
    try:
        reaped = reap_idle_matches(db, threshold_minutes=request.threshold_minutes, notifier=notifier)
        return {
            "reaped": [
                {
                    "match_id": r.match_id,
                    "room_code": r.room_code,
                    "refunded_players": list(r.refunded_players),
                    "entry_fee": r.entry_fee,
                    "idle_minutes": r.idle_minutes,
                }
                for r in reaped
            ]
        }
    except (HTTPException, MatchError):
        raise
    except Exception as e:
        logger.error(f"Idle sweep failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Idle sweep failed. Please try again.")


@app.get("/api/admin/idle-matches")
async def get_idle_matches(http_request: Request, threshold_minutes: Optional[int] = None):
    require_admin(http_request)
    return [
        {"match": match_response(match), "idle_minutes": idle}
        for match, idle in list_idle_matches(db, threshold_minutes)
    ]


# === Ledger ===

@app.post("/api/admin/users/{user_id}/adjust")
async def adjust_balance_endpoint(user_id: int, request: AdjustBalanceRequest, http_request: Request) -> LedgerEntryResponse:
    """Manual deposit (credit) or withdrawal (debit)."""
    admin_id = require_admin(http_request)
    try:
        entry = adjust_balance(
            db, admin_id, user_id, request.amount, request.direction, request.reason, notifier=notifier
        )
        return ledger_entry_response(entry)
    except (HTTPException, MatchError):
        raise
    except Exception as e:
        logger.error(f"Balance adjustment failed for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to adjust balance. Please try again.")


@app.get("/api/ledger")
async def get_ledger(
    http_request: Request,
    user_id: Optional[int] = None,
    match_id: Optional[str] = None,
    kind: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[LedgerEntryResponse]:
    """Ledger entries. Players only ever see their own."""
    caller = require_user(http_request)
    if not is_admin(http_request):
        user_id = caller

    entries = list_ledger_entries(
        db, user_id=user_id, match_id=match_id, kind=kind, status=status, limit=min(limit, 500)
    )
    return [ledger_entry_response(e) for e in entries]


# === Wallet ===

@app.post("/api/wallet/deposit")
async def deposit_endpoint(request: DepositRequest, http_request: Request) -> LedgerEntryResponse:
    """File a deposit. The balance is credited once an admin approves it."""
    user_id = require_user(http_request)
    entry = request_deposit(db, user_id, request.amount, request.proof)
    return ledger_entry_response(entry)


@app.post("/api/wallet/withdraw")
async def withdraw_endpoint(request: WithdrawRequest, http_request: Request) -> LedgerEntryResponse:
    """Reserve coins for a payout. They return to the balance if the admin rejects it."""
    user_id = require_user(http_request)
    try:
        entry = request_withdrawal(db, user_id, request.amount, request.payout_to)
        return ledger_entry_response(entry)
    except (HTTPException, MatchError):
        raise
    except Exception as e:
        logger.error(f"Withdrawal request failed for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to submit withdrawal request. Please try again.")


@app.get("/api/admin/transactions")
async def get_pending_transactions(
    http_request: Request,
    kind: Optional[str] = None,
    limit: int = 50,
) -> List[LedgerEntryResponse]:
    require_admin(http_request)
    entries = list_pending_transactions(db, kind=kind, limit=min(limit, 500))
    return [ledger_entry_response(e) for e in entries]


@app.post("/api/admin/transactions/{entry_id}/{decision}")
async def review_transaction_endpoint(
    entry_id: str, decision: str, request: ReviewTransactionRequest, http_request: Request
) -> LedgerEntryResponse:
    admin_id = require_admin(http_request)
    try:
        entry = review_transaction(db, admin_id, entry_id, decision, request.note or "", notifier=notifier)
        return ledger_entry_response(entry)
    except (HTTPException, MatchError):
        raise
    except Exception as e:
        logger.error(f"Transaction review failed for {entry_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to review transaction. Please try again.")


@app.get("/api/admin/reconcile/{user_id}")
async def reconcile_endpoint(user_id: int, http_request: Request):
    require_admin(http_request)
    result = reconcile_account(db, user_id)
    return {
        "user_id": result.user_id,
        "stored_balance": result.stored_balance,
        "ledger_balance": result.ledger_balance,
        "difference": result.difference,
        "ok": result.ok,
    }


@app.get("/api/admin/summary")
async def get_platform_summary(http_request: Request):
    require_admin(http_request)
    return platform_summary(db)


@app.get("/api/admin/action-logs")
async def get_action_logs(
    http_request: Request,
    limit: int = 100,
    admin_id: Optional[int] = None,
    target_type: Optional[str] = None,
) -> List[AdminActionResponse]:
    require_admin(http_request)
    actions = AdminActionLog(db).recent(limit=min(limit, 500), admin_id=admin_id, target_type=target_type)
    return [admin_action_response(a) for a in actions]


if __name__ == "__main__":
    import uvicorn

    logger.info("="*50)
    logger.info("Coinduel API Starting...")
    logger.info("="*50)

    uvicorn.run(app, host="0.0.0.0", port=8000)
