"""
API Routes - FastAPI endpoints for the credit ledger guard.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from creditguard.api.dependencies import require_api_key
from creditguard.config import get_settings
from creditguard.db.session import get_write_db
from creditguard.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    IdempotencyConflictError,
    WriteVerificationError,
)
from creditguard.models.api import (
    AutoRechargeResponse,
    BalanceCheckRequest,
    BalanceCheckResponse,
    BalanceResponse,
    BatchCheckRequest,
    BatchCheckResponse,
    CreateAccountRequest,
    CreditStatusResponse,
    DepositRequest,
    DepositResponse,
    FinalizeRequest,
    FinalizeResponse,
    HealthResponse,
    ReleaseRequest,
    ReservationResponse,
    ReserveRequest,
    TransactionItem,
    TransactionListResponse,
    TransactionType,
    UpdateSettingsRequest,
    UpdateSettingsResponse,
    UsageDayItem,
    UsageSummaryResponse,
)
from creditguard.models.domain import (
    BalanceSnapshot,
    Err,
    FinalizationData,
    GuardErrorKind,
    ReservationData,
)
from creditguard.services.accounts import AccountService
from creditguard.services.balance_store import BalanceStore
from creditguard.services.finalization import FinalizationManager
from creditguard.services.reservations import ReservationManager

router = APIRouter()

AUTH = [Depends(require_api_key)]

_ERR_STATUS = (
    (GuardErrorKind.INSUFFICIENT_CREDITS, status.HTTP_402_PAYMENT_REQUIRED),
    (GuardErrorKind.ACCOUNT_NOT_FOUND, status.HTTP_404_NOT_FOUND),
    (GuardErrorKind.RESERVATION_NOT_FOUND, status.HTTP_404_NOT_FOUND),
)


def _raise_for_err(result: Err) -> NoReturn:
    """Map a guard Err to the matching HTTP status."""
    for kind, status_code in _ERR_STATUS:
        if result.kind == kind:
            raise HTTPException(status_code=status_code, detail=result.message)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.message)


def _account_not_found(exc: AccountNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Account not found: {exc.account_id}",
    )


def _balance_response(snapshot: BalanceSnapshot) -> BalanceResponse:
    return BalanceResponse(
        account_id=snapshot.account_id,
        billing_enabled=snapshot.billing_enabled,
        available_minor=snapshot.available_minor,
        reserved_minor=snapshot.reserved_minor,
        total_minor=snapshot.total_minor,
        cost_per_minute_minor=snapshot.cost_per_minute_minor,
    )


def _reservation_response(data: ReservationData) -> ReservationResponse:
    return ReservationResponse(
        reservation_id=data.reservation_id,
        account_id=data.account_id,
        amount_minor=data.amount_minor,
        status=data.status,
        billing_enabled=data.billing_enabled,
        replayed=data.replayed,
        available_minor=data.available_after,
        reserved_minor=data.reserved_after,
    )


def _finalize_response(request: FinalizeRequest, data: FinalizationData) -> FinalizeResponse:
    record = data.record
    if record is None:
        # Unmetered account - nothing was charged
        return FinalizeResponse(
            call_id=request.call_id,
            reservation_id=request.reservation_id,
            billing_enabled=data.billing_enabled,
            replayed=data.replayed,
            actual_cost_minor=0,
            deducted_minor=0,
            refunded_minor=0,
            shortfall_minor=0,
            margin_minor=None,
            available_minor=data.available_after,
            reserved_minor=data.reserved_after,
            low_balance_alert=False,
            auto_recharge_needed=False,
            finalized_at=None,
        )

    return FinalizeResponse(
        call_id=record.call_id,
        reservation_id=record.reservation_id,
        billing_enabled=data.billing_enabled,
        replayed=data.replayed,
        actual_cost_minor=record.actual_cost_minor,
        deducted_minor=record.deducted_minor,
        refunded_minor=record.refunded_minor,
        shortfall_minor=record.shortfall_minor,
        margin_minor=record.margin_minor,
        available_minor=data.available_after,
        reserved_minor=data.reserved_after,
        low_balance_alert=data.low_balance_alert,
        auto_recharge_needed=data.auto_recharge_needed,
        finalized_at=record.finalized_at.isoformat(),
    )


# =============================================================================
# Accounts
# =============================================================================


@router.post(
    "/v1/accounts",
    response_model=BalanceResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=AUTH,
)
async def create_account(
    request: CreateAccountRequest,
    db: AsyncSession = Depends(get_write_db),
) -> BalanceResponse:
    """
    Get or create a billing record for an account.

    Idempotent: an existing account is returned unchanged.
    """
    service = AccountService(db)
    snapshot = await service.get_or_create_account(
        request.account_id,
        billing_enabled=request.billing_enabled,
        cost_per_minute_minor=request.cost_per_minute_minor,
    )
    return _balance_response(snapshot)


@router.get(
    "/v1/accounts/{account_id}/balance",
    response_model=BalanceResponse,
    dependencies=AUTH,
)
async def get_balance(
    account_id: str,
    db: AsyncSession = Depends(get_write_db),
) -> BalanceResponse:
    """Current available and reserved balance."""
    store = BalanceStore(db)
    try:
        snapshot = await store.get_balance(account_id)
    except AccountNotFoundError as exc:
        raise _account_not_found(exc) from exc
    return _balance_response(snapshot)


@router.get(
    "/v1/accounts/{account_id}/status",
    response_model=CreditStatusResponse,
    dependencies=AUTH,
)
async def get_credit_status(
    account_id: str,
    db: AsyncSession = Depends(get_write_db),
) -> CreditStatusResponse:
    """Balance, minutes remaining, and low-balance flag for dashboards."""
    service = AccountService(db)
    try:
        data = await service.get_credit_status(account_id)
    except AccountNotFoundError as exc:
        raise _account_not_found(exc) from exc

    return CreditStatusResponse(
        account_id=data.account_id,
        billing_enabled=data.billing_enabled,
        available_minor=data.available_minor,
        reserved_minor=data.reserved_minor,
        cost_per_minute_minor=data.cost_per_minute_minor,
        minutes_remaining=data.minutes_remaining,
        is_low_balance=data.is_low_balance,
        low_balance_threshold_minor=data.low_balance_threshold_minor,
        auto_recharge_enabled=data.auto_recharge_enabled,
        active_reservations=data.active_reservations,
    )


@router.patch(
    "/v1/accounts/{account_id}/settings",
    response_model=UpdateSettingsResponse,
    dependencies=AUTH,
)
async def update_settings(
    account_id: str,
    request: UpdateSettingsRequest,
    db: AsyncSession = Depends(get_write_db),
) -> UpdateSettingsResponse:
    """Update rate, low-balance threshold, and auto-recharge settings."""
    service = AccountService(db)
    try:
        updated = await service.update_settings(
            account_id,
            billing_enabled=request.billing_enabled,
            cost_per_minute_minor=request.cost_per_minute_minor,
            low_balance_threshold_minor=request.low_balance_threshold_minor,
            auto_recharge_enabled=request.auto_recharge_enabled,
            auto_recharge_trigger_minor=request.auto_recharge_trigger_minor,
            auto_recharge_amount_minor=request.auto_recharge_amount_minor,
        )
    except AccountNotFoundError as exc:
        raise _account_not_found(exc) from exc
    return UpdateSettingsResponse(account_id=account_id, updated=updated)


@router.get(
    "/v1/accounts/{account_id}/transactions",
    response_model=TransactionListResponse,
    dependencies=AUTH,
)
async def list_transactions(
    account_id: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    transaction_type: TransactionType | None = None,
    db: AsyncSession = Depends(get_write_db),
) -> TransactionListResponse:
    """Ledger history, newest first."""
    service = AccountService(db)
    try:
        page, total = await service.list_transactions(
            account_id, limit=limit, offset=offset, transaction_type=transaction_type
        )
    except AccountNotFoundError as exc:
        raise _account_not_found(exc) from exc

    items = [
        TransactionItem(
            transaction_id=entry.transaction_id,
            transaction_type=entry.transaction_type,
            amount_minor=entry.amount_minor,
            available_after=entry.available_after,
            reserved_after=entry.reserved_after,
            reservation_id=entry.reservation_id,
            call_id=entry.call_id,
            description=entry.description,
            created_at=entry.created_at.isoformat(),
        )
        for entry in page
    ]
    return TransactionListResponse(
        transactions=items,
        total_count=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(items) < total,
    )


@router.get(
    "/v1/accounts/{account_id}/usage",
    response_model=UsageSummaryResponse,
    dependencies=AUTH,
)
async def get_usage_summary(
    account_id: str,
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_write_db),
) -> UsageSummaryResponse:
    """Settled-call totals and per-day usage for the last `days` days."""
    service = AccountService(db)
    try:
        data = await service.get_usage_summary(account_id, days=days)
    except AccountNotFoundError as exc:
        raise _account_not_found(exc) from exc

    return UsageSummaryResponse(
        account_id=data.account_id,
        days=data.days,
        total_calls=data.total_calls,
        total_minutes=data.total_minutes,
        billed_cost_minor=data.billed_cost_minor,
        deducted_minor=data.deducted_minor,
        shortfall_minor=data.shortfall_minor,
        provider_cost_minor=data.provider_cost_minor,
        margin_minor=data.margin_minor,
        margin_percent=data.margin_percent,
        daily=[
            UsageDayItem(
                period=day.day.isoformat(),
                total_calls=day.total_calls,
                total_minutes=day.total_minutes,
                total_cost_minor=day.total_cost_minor,
                average_call_seconds=day.average_call_seconds,
            )
            for day in data.daily
        ],
    )


@router.get(
    "/v1/accounts/{account_id}/auto-recharge",
    response_model=AutoRechargeResponse,
    dependencies=AUTH,
)
async def check_auto_recharge(
    account_id: str,
    db: AsyncSession = Depends(get_write_db),
) -> AutoRechargeResponse:
    """Whether the account should be topped up now."""
    service = AccountService(db)
    try:
        data = await service.check_auto_recharge(account_id)
    except AccountNotFoundError as exc:
        raise _account_not_found(exc) from exc

    return AutoRechargeResponse(
        account_id=data.account_id,
        needs_recharge=data.needs_recharge,
        available_minor=data.available_minor,
        recharge_amount_minor=data.recharge_amount_minor,
    )


# =============================================================================
# Credits
# =============================================================================


@router.post(
    "/v1/credits/deposit",
    response_model=DepositResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=AUTH,
)
async def deposit_credits(
    request: DepositRequest,
    db: AsyncSession = Depends(get_write_db),
) -> DepositResponse:
    """Top up an account's available balance."""
    service = AccountService(db)
    try:
        data = await service.add_credits(
            request.account_id,
            request.amount_minor,
            description=request.description,
            idempotency_key=request.idempotency_key,
        )
    except AccountNotFoundError as exc:
        raise _account_not_found(exc) from exc

    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Deposit already exists",
            headers={"X-Existing-Transaction-ID": str(exc.existing_id)},
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return DepositResponse(
        transaction_id=data.transaction_id,
        account_id=data.account_id,
        amount_minor=data.amount_minor,
        available_after=data.available_after,
        created_at=data.created_at.isoformat(),
    )


@router.post("/v1/credits/check", response_model=BalanceCheckResponse, dependencies=AUTH)
async def check_credit_balance(
    request: BalanceCheckRequest,
    db: AsyncSession = Depends(get_write_db),
) -> BalanceCheckResponse:
    """
    Pre-call balance check. Nothing is held.

    Returns 402 when the available balance is below the estimate.
    """
    manager = ReservationManager(db)
    result = await manager.check_credit_balance(
        request.account_id, request.estimated_amount_minor
    )
    if isinstance(result, Err):
        _raise_for_err(result)

    data = result.value
    return BalanceCheckResponse(
        can_make_call=True,
        billing_enabled=data.billing_enabled,
        available_minor=data.available_minor,
        reserved_minor=data.reserved_minor,
        required_minor=data.required_minor,
        cost_per_minute_minor=data.cost_per_minute_minor,
    )


@router.post("/v1/credits/check-batch", response_model=BatchCheckResponse, dependencies=AUTH)
async def check_batch_credits(
    request: BatchCheckRequest,
    db: AsyncSession = Depends(get_write_db),
) -> BatchCheckResponse:
    """Broadcast pre-check: can the whole batch be afforded, and how many calls can."""
    manager = ReservationManager(db)
    result = await manager.check_batch_credits(
        request.account_id, request.call_count, request.estimated_minutes_per_call
    )
    if isinstance(result, Err):
        _raise_for_err(result)

    data = result.value
    return BatchCheckResponse(
        can_proceed=data.can_proceed,
        billing_enabled=data.billing_enabled,
        available_minor=data.available_minor,
        estimated_cost_minor=data.estimated_cost_minor,
        calls_affordable=data.calls_affordable,
    )


@router.post(
    "/v1/credits/reserve",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=AUTH,
)
async def reserve_credits(
    request: ReserveRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ReservationResponse:
    """
    Hold credits before dialing.

    Without amount_minor the default one-minute estimate is reserved.
    Retrying with the same call_id returns the original reservation.
    """
    amount = (
        request.amount_minor
        if request.amount_minor is not None
        else get_settings().default_reservation_minor
    )
    manager = ReservationManager(db)
    try:
        result = await manager.reserve_credits(request.account_id, amount, request.call_id)
    except IdempotencyConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="call_id already reserved by another account",
            headers={"X-Existing-Reservation-ID": str(exc.existing_id)},
        ) from exc

    if isinstance(result, Err):
        _raise_for_err(result)
    return _reservation_response(result.value)


@router.post("/v1/credits/finalize", response_model=FinalizeResponse, dependencies=AUTH)
async def finalize_call(
    request: FinalizeRequest,
    db: AsyncSession = Depends(get_write_db),
) -> FinalizeResponse:
    """
    Settle a completed call, priced either directly or from its duration.

    Safe to retry: the same call_id always returns the original settlement.
    """
    manager = FinalizationManager(db)
    if request.duration_seconds is not None:
        result = await manager.finalize_call_duration(
            request.account_id,
            request.reservation_id,
            request.call_id,
            request.duration_seconds,
            provider_cost_minor=request.provider_cost_minor,
        )
    else:
        assert request.actual_cost_minor is not None
        result = await manager.finalize_call_cost(
            request.account_id,
            request.reservation_id,
            request.call_id,
            request.actual_cost_minor,
        )

    if isinstance(result, Err):
        _raise_for_err(result)
    return _finalize_response(request, result.value)


@router.post("/v1/credits/release", response_model=ReservationResponse, dependencies=AUTH)
async def release_reservation(
    request: ReleaseRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ReservationResponse:
    """Return a reservation to available (call never connected). Idempotent."""
    manager = FinalizationManager(db)
    result = await manager.release_reservation(request.account_id, request.reservation_id)
    if isinstance(result, Err):
        _raise_for_err(result)
    return _reservation_response(result.value)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_write_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
        await db.commit()

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
