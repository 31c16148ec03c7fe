"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class ReservationStatus(str, Enum):
    """Reservation lifecycle states. FINALIZED and RELEASED are terminal."""

    ACTIVE = "active"
    FINALIZED = "finalized"
    RELEASED = "released"


class TransactionType(str, Enum):
    """Credit ledger transaction type enumeration."""

    DEPOSIT = "deposit"
    RESERVATION = "reservation"
    RELEASE = "release"
    DEDUCTION = "deduction"
    ADJUSTMENT = "adjustment"


# ============================================================================
# Account Models
# ============================================================================


class CreateAccountRequest(BaseModel):
    """POST /v1/accounts request body."""

    account_id: str = Field(..., min_length=1, max_length=255)
    billing_enabled: bool = True
    cost_per_minute_minor: int | None = Field(None, ge=0)


class BalanceResponse(BaseModel):
    """Account balance snapshot."""

    account_id: str
    billing_enabled: bool
    available_minor: int
    reserved_minor: int
    total_minor: int
    cost_per_minute_minor: int


class CreditStatusResponse(BaseModel):
    """GET /v1/accounts/{account_id}/status response."""

    account_id: str
    billing_enabled: bool
    available_minor: int
    reserved_minor: int
    cost_per_minute_minor: int
    minutes_remaining: int
    is_low_balance: bool
    low_balance_threshold_minor: int
    auto_recharge_enabled: bool
    active_reservations: int


class UpdateSettingsRequest(BaseModel):
    """PATCH /v1/accounts/{account_id}/settings request body."""

    billing_enabled: bool | None = None
    cost_per_minute_minor: int | None = Field(None, ge=0)
    low_balance_threshold_minor: int | None = Field(None, ge=0)
    auto_recharge_enabled: bool | None = None
    auto_recharge_trigger_minor: int | None = Field(None, ge=0)
    auto_recharge_amount_minor: int | None = Field(None, ge=0)


class UpdateSettingsResponse(BaseModel):
    """PATCH /v1/accounts/{account_id}/settings response."""

    account_id: str
    updated: list[str]


class AutoRechargeResponse(BaseModel):
    """GET /v1/accounts/{account_id}/auto-recharge response."""

    account_id: str
    needs_recharge: bool
    available_minor: int
    recharge_amount_minor: int


# ============================================================================
# Deposit Models
# ============================================================================


class DepositRequest(BaseModel):
    """POST /v1/credits/deposit request body."""

    account_id: str = Field(..., min_length=1, max_length=255)
    amount_minor: int = Field(..., gt=0)
    description: str = Field("Credit deposit", min_length=1, max_length=500)
    idempotency_key: str | None = Field(None, min_length=1, max_length=255)


class DepositResponse(BaseModel):
    """POST /v1/credits/deposit response."""

    transaction_id: UUID
    account_id: str
    amount_minor: int
    available_after: int
    created_at: str


# ============================================================================
# Guard Models
# ============================================================================


class BalanceCheckRequest(BaseModel):
    """POST /v1/credits/check request body."""

    account_id: str = Field(..., min_length=1, max_length=255)
    estimated_amount_minor: int | None = Field(None, ge=0)


class BalanceCheckResponse(BaseModel):
    """POST /v1/credits/check response."""

    can_make_call: bool
    billing_enabled: bool
    available_minor: int
    reserved_minor: int
    required_minor: int
    cost_per_minute_minor: int


class BatchCheckRequest(BaseModel):
    """POST /v1/credits/check-batch request body."""

    account_id: str = Field(..., min_length=1, max_length=255)
    call_count: int = Field(..., ge=0)
    estimated_minutes_per_call: int = Field(2, gt=0)


class BatchCheckResponse(BaseModel):
    """POST /v1/credits/check-batch response."""

    can_proceed: bool
    billing_enabled: bool
    available_minor: int
    estimated_cost_minor: int
    calls_affordable: int


class ReserveRequest(BaseModel):
    """POST /v1/credits/reserve request body."""

    account_id: str = Field(..., min_length=1, max_length=255)
    amount_minor: int | None = Field(None, gt=0)
    call_id: str | None = Field(None, min_length=1, max_length=255)


class ReservationResponse(BaseModel):
    """Reservation state after reserve or release."""

    reservation_id: UUID | None
    account_id: str
    amount_minor: int
    status: ReservationStatus | None
    billing_enabled: bool
    replayed: bool
    available_minor: int
    reserved_minor: int


class FinalizeRequest(BaseModel):
    """
    POST /v1/credits/finalize request body.

    Exactly one of actual_cost_minor or duration_seconds must be supplied.
    """

    account_id: str = Field(..., min_length=1, max_length=255)
    call_id: str = Field(..., min_length=1, max_length=255)
    reservation_id: UUID | None = None
    actual_cost_minor: int | None = Field(None, ge=0)
    duration_seconds: int | None = Field(None, ge=0)
    provider_cost_minor: int | None = Field(None, ge=0)

    @model_validator(mode="after")
    def validate_cost_source(self) -> "FinalizeRequest":
        """Require exactly one way of pricing the call."""
        if (self.actual_cost_minor is None) == (self.duration_seconds is None):
            raise ValueError("Provide exactly one of actual_cost_minor or duration_seconds")
        return self


class FinalizeResponse(BaseModel):
    """POST /v1/credits/finalize response."""

    call_id: str
    reservation_id: UUID | None
    billing_enabled: bool
    replayed: bool
    actual_cost_minor: int
    deducted_minor: int
    refunded_minor: int
    shortfall_minor: int
    margin_minor: int | None
    available_minor: int
    reserved_minor: int
    low_balance_alert: bool
    auto_recharge_needed: bool
    finalized_at: str | None


class ReleaseRequest(BaseModel):
    """POST /v1/credits/release request body."""

    account_id: str = Field(..., min_length=1, max_length=255)
    reservation_id: UUID


# ============================================================================
# Transaction Models
# ============================================================================


class TransactionItem(BaseModel):
    """Single ledger entry in transaction history."""

    transaction_id: UUID
    transaction_type: TransactionType
    amount_minor: int
    available_after: int
    reserved_after: int
    reservation_id: UUID | None
    call_id: str | None
    description: str
    created_at: str


class TransactionListResponse(BaseModel):
    """GET /v1/accounts/{account_id}/transactions response."""

    transactions: list[TransactionItem]
    total_count: int
    limit: int
    offset: int
    has_more: bool


# ============================================================================
# Usage Models
# ============================================================================


class UsageDayItem(BaseModel):
    """One UTC day of settled calls."""

    period: str
    total_calls: int
    total_minutes: int
    total_cost_minor: int
    average_call_seconds: int


class UsageSummaryResponse(BaseModel):
    """GET /v1/accounts/{account_id}/usage response."""

    account_id: str
    days: int
    total_calls: int
    total_minutes: int
    billed_cost_minor: int
    deducted_minor: int
    shortfall_minor: int
    provider_cost_minor: int
    margin_minor: int
    margin_percent: int
    daily: list[UsageDayItem]


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
