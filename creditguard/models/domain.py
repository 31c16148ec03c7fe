"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Guard operations return Ok(value) or Err(kind, message) so that the idempotent
and no-op paths are explicit at call sites.
"""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Generic, TypeVar
from uuid import UUID

from creditguard.models.api import ReservationStatus, TransactionType

T = TypeVar("T")


# ============================================================================
# Result Type
# ============================================================================


class GuardErrorKind(str, Enum):
    """Expected failure kinds surfaced by the guard operations."""

    INSUFFICIENT_CREDITS = "insufficient_credits"
    ACCOUNT_NOT_FOUND = "account_not_found"
    RESERVATION_NOT_FOUND = "reservation_not_found"


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful guard result."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed guard result - the ledger is unchanged."""

    kind: GuardErrorKind
    message: str

    @property
    def ok(self) -> bool:
        return False


# ============================================================================
# Intents (validated before any database work)
# ============================================================================


def require_id(name: str, value: str | None) -> None:
    if value is None or not value.strip():
        raise ValueError(f"{name} cannot be empty")


@dataclass(frozen=True)
class ReservationIntent:
    """Request to hold credits for one call attempt."""

    account_id: str
    amount_minor: int
    call_id: str | None = None

    def __post_init__(self) -> None:
        """Validate reservation constraints."""
        require_id("account_id", self.account_id)
        if self.call_id is not None:
            require_id("call_id", self.call_id)
        if self.amount_minor <= 0:
            raise ValueError(f"Reservation amount must be positive: {self.amount_minor}")


@dataclass(frozen=True)
class FinalizationIntent:
    """Settlement of one completed call against its reservation."""

    account_id: str
    reservation_id: UUID | None
    call_id: str
    actual_cost_minor: int
    duration_seconds: int | None = None
    provider_cost_minor: int | None = None

    def __post_init__(self) -> None:
        """Validate finalization constraints."""
        require_id("account_id", self.account_id)
        require_id("call_id", self.call_id)
        if self.actual_cost_minor < 0:
            raise ValueError(f"Actual cost cannot be negative: {self.actual_cost_minor}")
        if self.duration_seconds is not None and self.duration_seconds < 0:
            raise ValueError(f"Duration cannot be negative: {self.duration_seconds}")
        if self.provider_cost_minor is not None and self.provider_cost_minor < 0:
            raise ValueError(f"Provider cost cannot be negative: {self.provider_cost_minor}")

    @property
    def margin_minor(self) -> int | None:
        if self.provider_cost_minor is None:
            return None
        return self.actual_cost_minor - self.provider_cost_minor


@dataclass(frozen=True)
class DepositIntent:
    """Credit top-up before persistence."""

    account_id: str
    amount_minor: int
    description: str
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        """Validate deposit constraints."""
        require_id("account_id", self.account_id)
        if self.amount_minor <= 0:
            raise ValueError(f"Deposit amount must be positive: {self.amount_minor}")
        if not self.description:
            raise ValueError("Description cannot be empty")


# ============================================================================
# Snapshots and Results
# ============================================================================


@dataclass(frozen=True)
class BalanceSnapshot:
    """Immutable balance state at a point in time."""

    account_id: str
    available_minor: int
    reserved_minor: int
    billing_enabled: bool
    cost_per_minute_minor: int

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.available_minor < 0:
            raise ValueError(f"Available credits cannot be negative: {self.available_minor}")
        if self.reserved_minor < 0:
            raise ValueError(f"Reserved credits cannot be negative: {self.reserved_minor}")

    @property
    def total_minor(self) -> int:
        """Committed funds: available plus reserved."""
        return self.available_minor + self.reserved_minor


@dataclass(frozen=True)
class BalanceCheckData:
    """Outcome of a read-only pre-call balance check."""

    account_id: str
    billing_enabled: bool
    available_minor: int
    reserved_minor: int
    required_minor: int
    cost_per_minute_minor: int


@dataclass(frozen=True)
class BatchCheckData:
    """Outcome of a broadcast batch pre-check."""

    account_id: str
    can_proceed: bool
    billing_enabled: bool
    available_minor: int
    estimated_cost_minor: int
    calls_affordable: int


@dataclass(frozen=True)
class ReservationData:
    """Reservation state after reserve or release."""

    reservation_id: UUID | None
    account_id: str
    amount_minor: int
    status: ReservationStatus | None
    call_id: str | None
    billing_enabled: bool
    replayed: bool
    available_after: int
    reserved_after: int
    created_at: datetime | None = None


@dataclass(frozen=True)
class CallCostData:
    """Immutable call cost record after persistence."""

    call_id: str
    reservation_id: UUID
    account_id: str
    reserved_minor: int
    actual_cost_minor: int
    deducted_minor: int
    refunded_minor: int
    shortfall_minor: int
    duration_seconds: int | None
    provider_cost_minor: int | None
    margin_minor: int | None
    finalized_at: datetime


@dataclass(frozen=True)
class FinalizationData:
    """Outcome of finalizing a call. record is None for unmetered accounts."""

    account_id: str
    record: CallCostData | None
    billing_enabled: bool
    replayed: bool
    available_after: int
    reserved_after: int
    low_balance_alert: bool = False
    auto_recharge_needed: bool = False


@dataclass(frozen=True)
class DepositData:
    """Immutable deposit data after persistence."""

    transaction_id: UUID
    account_id: str
    amount_minor: int
    available_before: int
    available_after: int
    created_at: datetime


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger entry."""

    transaction_id: UUID
    account_id: str
    transaction_type: TransactionType
    amount_minor: int
    available_before: int
    available_after: int
    reserved_before: int
    reserved_after: int
    reservation_id: UUID | None
    call_id: str | None
    description: str
    created_at: datetime


@dataclass(frozen=True)
class CreditStatusData:
    """Full credit status for dashboards and call gating."""

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


@dataclass(frozen=True)
class AutoRechargeData:
    """Whether an account should be topped up automatically."""

    account_id: str
    needs_recharge: bool
    available_minor: int
    recharge_amount_minor: int


@dataclass(frozen=True)
class UsageDayData:
    """Settled calls for one UTC day."""

    day: date
    total_calls: int
    total_minutes: int
    total_cost_minor: int
    average_call_seconds: int


@dataclass(frozen=True)
class UsageSummaryData:
    """
    Usage over a trailing window of days.

    total_minutes counts each call rounded up to whole minutes. margin_percent
    is margin over billed cost, rounded to a whole percent (0 when nothing
    was billed).
    """

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
    daily: tuple[UsageDayData, ...]
