"""Credit ledger API routes."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..core.cleanup import ReservationCleanupService
from ..core.compensation import CompensationProcessor
from ..core.config import get_settings
from ..core.credits import CostEstimator
from ..core.errors import LedgerErrorKind, LedgerResult
from ..core.ledger import LedgerEngine
from ..core.refresh import CreditRefreshService
from ..core.security import limiter, with_request_provenance
from ..models.credits import (
    ActiveReservation,
    AuditEntryResponse,
    AuditOperation,
    BalanceCheck,
    CancelRequest,
    CancelResult,
    CompensationOutcome,
    CompensationRequest,
    CompensationResponse,
    CreateUserRequest,
    DeductRequest,
    DeductResult,
    EstimateRequest,
    EstimateResponse,
    GrantRequest,
    GrantResult,
    RefreshBatchResult,
    RefreshInfo,
    RefreshRequest,
    RefreshResult,
    ReservationResult,
    ReservationType,
    ReserveRequest,
    SettleRequest,
    SettlementResult,
    UsageInput,
    UsageRecordResponse,
    UsageStats,
    UserResponse,
)

router = APIRouter(prefix="/credits", tags=["credits"])
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    LedgerErrorKind.INVALID_INPUT: 400,
    LedgerErrorKind.INSUFFICIENT_FUNDS: 402,
    LedgerErrorKind.NOT_FOUND: 404,
    LedgerErrorKind.INVALID_STATE_TRANSITION: 409,
    LedgerErrorKind.CONFLICT: 409,
    LedgerErrorKind.SAFETY_LIMIT_EXCEEDED: 422,
    LedgerErrorKind.CONSISTENCY_VIOLATION: 500,
}


def ledger_rate_limit() -> str:
    return get_settings().ledger_rate_limit


def unwrap_or_raise(result: LedgerResult):
    """Return the result value or raise an HTTPException for its error kind."""
    if result.ok:
        return result.value
    raise HTTPException(
        status_code=ERROR_STATUS_CODES[result.error.kind],
        detail=result.error.to_dict(),
    )


# ============ Dependencies ============


def get_ledger(request: Request) -> LedgerEngine:
    return request.app.state.ledger


def get_estimator(request: Request) -> CostEstimator:
    return request.app.state.estimator


def get_compensations(request: Request) -> CompensationProcessor:
    return request.app.state.compensations


def get_cleanup(request: Request) -> ReservationCleanupService:
    return request.app.state.cleanup


def get_refresh(request: Request) -> CreditRefreshService:
    return request.app.state.refresh


# ============ Users and balances ============


@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user(body: CreateUserRequest, ledger: LedgerEngine = Depends(get_ledger)):
    """Create a user with an optional initial credit allocation."""
    return unwrap_or_raise(await ledger.create_user(
        body.user_id, body.email, body.initial_credits, body.tier
    ))


@router.get("/users/{user_id}/balance", response_model=BalanceCheck)
async def check_balance(
    user_id: str,
    required: float = Query(default=0, ge=0),
    ledger: LedgerEngine = Depends(get_ledger),
):
    """Advisory balance check. A later deduct can still fail."""
    return unwrap_or_raise(await ledger.check_balance(user_id, required))


@router.post("/deduct", response_model=DeductResult)
@limiter.limit(ledger_rate_limit)
async def deduct(request: Request, body: DeductRequest, ledger: LedgerEngine = Depends(get_ledger)):
    context = with_request_provenance(body.context, request)
    return unwrap_or_raise(await ledger.deduct(body.user_id, body.amount, context))


@router.post("/grant", response_model=GrantResult)
@limiter.limit(ledger_rate_limit)
async def grant(request: Request, body: GrantRequest, ledger: LedgerEngine = Depends(get_ledger)):
    """Add purchased, refreshed, adjusted or refunded credits."""
    context = with_request_provenance(body.context, request)
    return unwrap_or_raise(await ledger.grant(body.user_id, body.amount, body.operation, context))


# ============ Reservations ============


@router.post("/reservations", response_model=ReservationResult, status_code=201)
@limiter.limit(ledger_rate_limit)
async def reserve(request: Request, body: ReserveRequest, ledger: LedgerEngine = Depends(get_ledger)):
    """Hold credits for an operation whose cost is not yet known."""
    context = with_request_provenance(body.context, request)
    return unwrap_or_raise(await ledger.reserve(
        body.user_id,
        body.amount,
        reservation_context=body.reservation_context,
        context=context,
        reservation_type=body.reservation_type,
        ttl_minutes=body.ttl_minutes,
        expires_at=body.expires_at,
    ))


@router.post("/reservations/{reservation_id}/settle", response_model=SettlementResult)
@limiter.limit(ledger_rate_limit)
async def settle(
    request: Request,
    reservation_id: str,
    body: SettleRequest,
    ledger: LedgerEngine = Depends(get_ledger),
):
    return unwrap_or_raise(await ledger.settle(reservation_id, body.actual_credits_used, body.usage))


@router.post("/reservations/{reservation_id}/cancel", response_model=CancelResult)
@limiter.limit(ledger_rate_limit)
async def cancel(
    request: Request,
    reservation_id: str,
    body: CancelRequest,
    ledger: LedgerEngine = Depends(get_ledger),
):
    return unwrap_or_raise(await ledger.cancel(reservation_id, body.reason))


@router.get("/users/{user_id}/reservations", response_model=list[ActiveReservation])
async def list_active_reservations(
    user_id: str,
    reservation_type: Optional[ReservationType] = None,
    limit: int = Query(default=50, ge=1, le=500),
    ledger: LedgerEngine = Depends(get_ledger),
):
    return await ledger.get_active_reservations(user_id, reservation_type, limit)


# ============ Usage and audit ============


@router.post("/usage", response_model=UsageRecordResponse, status_code=201)
async def record_usage(body: UsageInput, ledger: LedgerEngine = Depends(get_ledger)):
    """Record a billable model call."""
    return unwrap_or_raise(await ledger.record_usage(body))


@router.get("/users/{user_id}/usage", response_model=UsageStats)
async def get_usage_stats(
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    ledger: LedgerEngine = Depends(get_ledger),
):
    return unwrap_or_raise(await ledger.get_usage_stats(user_id, start, end, limit))


@router.get("/users/{user_id}/audit", response_model=list[AuditEntryResponse])
async def get_audit_trail(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    operation: Optional[AuditOperation] = None,
    ledger: LedgerEngine = Depends(get_ledger),
):
    return await ledger.get_audit_trail(user_id, limit, offset, operation)


@router.post("/estimate", response_model=EstimateResponse)
async def estimate(body: EstimateRequest, estimator: CostEstimator = Depends(get_estimator)):
    """Pre-flight credit estimate with the buffered reservation size."""
    result = await estimator.estimate_message_credits(
        body.content,
        body.model,
        body.provider,
        system_prompt=body.system_prompt,
        conversation_history=body.conversation_history,
        attachments=body.attachments,
        unit_count=body.unit_count,
    )
    return EstimateResponse(
        estimate=result,
        reservation_amount=max(1, estimator.reservation_amount(result)),
    )


# ============ Maintenance ============


@router.post("/compensations", response_model=CompensationResponse, status_code=201)
async def create_compensation(
    body: CompensationRequest,
    compensations: CompensationProcessor = Depends(get_compensations),
):
    return unwrap_or_raise(await compensations.create_compensation(
        body.user_id, body.credits, body.reason, body.message_id
    ))


@router.post("/compensations/process", response_model=list[CompensationOutcome])
async def process_compensations(
    batch_size: Optional[int] = Query(default=None, ge=1, le=1000),
    compensations: CompensationProcessor = Depends(get_compensations),
):
    return await compensations.process_pending(batch_size)


@router.post("/cleanup/run")
async def run_cleanup(cleanup: ReservationCleanupService = Depends(get_cleanup)):
    """Run a cleanup cycle immediately."""
    logger.info("Manual cleanup requested")
    return await cleanup.run_once()


@router.get("/cleanup/stats")
async def cleanup_stats(cleanup: ReservationCleanupService = Depends(get_cleanup)):
    return cleanup.get_stats()


# ============ Credit refresh ============


@router.get("/users/{user_id}/refresh", response_model=RefreshInfo)
async def get_refresh_info(user_id: str, refresh: CreditRefreshService = Depends(get_refresh)):
    """When the user's next refresh is due and how many credits it brings."""
    return unwrap_or_raise(await refresh.get_next_refresh_info(user_id))


@router.post("/users/{user_id}/refresh", response_model=RefreshResult)
@limiter.limit(ledger_rate_limit)
async def refresh_user(
    request: Request,
    user_id: str,
    body: RefreshRequest,
    refresh: CreditRefreshService = Depends(get_refresh),
):
    """Refresh one user now. Without force the user must be due."""
    return unwrap_or_raise(await refresh.refresh_user(
        user_id,
        amount=body.amount,
        reason=body.reason,
        force=body.force,
        metadata={"triggered_by": "api"},
    ))


@router.post("/refresh/run", response_model=RefreshBatchResult)
async def run_refresh(
    batch_size: Optional[int] = Query(default=None, ge=1, le=1000),
    refresh: CreditRefreshService = Depends(get_refresh),
):
    """Refresh every due user immediately."""
    logger.info("Manual credit refresh requested")
    return await refresh.refresh_all_eligible(batch_size)


@router.get("/refresh/stats")
async def refresh_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    refresh: CreditRefreshService = Depends(get_refresh),
):
    return await refresh.get_statistics(start, end)
