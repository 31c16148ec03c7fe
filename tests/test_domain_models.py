"""
Tests for domain models.
"""

from uuid import uuid4

import pytest

from creditguard.models.api import FinalizeRequest
from creditguard.models.domain import (
    BalanceSnapshot,
    DepositIntent,
    Err,
    FinalizationIntent,
    GuardErrorKind,
    Ok,
    ReservationIntent,
)


class TestResultType:
    """Tests for Ok/Err guard results."""

    def test_ok_carries_value(self):
        result = Ok(42)
        assert result.ok is True
        assert result.value == 42

    def test_err_carries_kind_and_message(self):
        result = Err(GuardErrorKind.INSUFFICIENT_CREDITS, "Available: 5, Required: 15")
        assert result.ok is False
        assert result.kind == GuardErrorKind.INSUFFICIENT_CREDITS
        assert "Required: 15" in result.message

    def test_error_kinds_are_stable_strings(self):
        assert GuardErrorKind.ACCOUNT_NOT_FOUND.value == "account_not_found"
        assert GuardErrorKind.RESERVATION_NOT_FOUND.value == "reservation_not_found"


class TestReservationIntent:
    """Tests for ReservationIntent validation."""

    def test_valid_intent(self):
        intent = ReservationIntent(account_id="org-1", amount_minor=15, call_id="call-1")
        assert intent.amount_minor == 15
        assert intent.call_id == "call-1"

    def test_call_id_is_optional(self):
        intent = ReservationIntent(account_id="org-1", amount_minor=15)
        assert intent.call_id is None

    @pytest.mark.parametrize("account_id", ["", "   "])
    def test_rejects_blank_account_id(self, account_id: str):
        with pytest.raises(ValueError, match="account_id cannot be empty"):
            ReservationIntent(account_id=account_id, amount_minor=15)

    def test_rejects_blank_call_id(self):
        with pytest.raises(ValueError, match="call_id cannot be empty"):
            ReservationIntent(account_id="org-1", amount_minor=15, call_id=" ")

    @pytest.mark.parametrize("amount", [0, -1])
    def test_rejects_non_positive_amount(self, amount: int):
        with pytest.raises(ValueError, match="must be positive"):
            ReservationIntent(account_id="org-1", amount_minor=amount)

    def test_is_immutable(self):
        intent = ReservationIntent(account_id="org-1", amount_minor=15)
        with pytest.raises(AttributeError):
            intent.amount_minor = 30  # type: ignore[misc]


class TestFinalizationIntent:
    """Tests for FinalizationIntent validation."""

    def test_zero_cost_is_allowed(self):
        intent = FinalizationIntent(
            account_id="org-1", reservation_id=uuid4(), call_id="call-1", actual_cost_minor=0
        )
        assert intent.actual_cost_minor == 0

    def test_rejects_negative_cost(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            FinalizationIntent(
                account_id="org-1", reservation_id=None, call_id="call-1", actual_cost_minor=-1
            )

    def test_requires_call_id(self):
        with pytest.raises(ValueError, match="call_id cannot be empty"):
            FinalizationIntent(
                account_id="org-1", reservation_id=None, call_id="", actual_cost_minor=7
            )

    def test_margin_requires_provider_cost(self):
        intent = FinalizationIntent(
            account_id="org-1", reservation_id=None, call_id="call-1", actual_cost_minor=17
        )
        assert intent.margin_minor is None

    def test_margin_is_billed_minus_provider_cost(self):
        intent = FinalizationIntent(
            account_id="org-1",
            reservation_id=None,
            call_id="call-1",
            actual_cost_minor=17,
            duration_seconds=61,
            provider_cost_minor=5,
        )
        assert intent.margin_minor == 12

    def test_rejects_negative_duration(self):
        with pytest.raises(ValueError, match="Duration cannot be negative"):
            FinalizationIntent(
                account_id="org-1",
                reservation_id=None,
                call_id="call-1",
                actual_cost_minor=0,
                duration_seconds=-5,
            )


class TestDepositIntent:
    """Tests for DepositIntent validation."""

    def test_rejects_zero_deposit(self):
        with pytest.raises(ValueError, match="must be positive"):
            DepositIntent(account_id="org-1", amount_minor=0, description="Top up")

    def test_rejects_empty_description(self):
        with pytest.raises(ValueError, match="Description cannot be empty"):
            DepositIntent(account_id="org-1", amount_minor=100, description="")


class TestBalanceSnapshot:
    """Tests for BalanceSnapshot."""

    def test_total_is_available_plus_reserved(self):
        snapshot = BalanceSnapshot(
            account_id="org-1",
            available_minor=90,
            reserved_minor=10,
            billing_enabled=True,
            cost_per_minute_minor=15,
        )
        assert snapshot.total_minor == 100

    def test_rejects_negative_available(self):
        with pytest.raises(ValueError, match="Available credits cannot be negative"):
            BalanceSnapshot(
                account_id="org-1",
                available_minor=-1,
                reserved_minor=0,
                billing_enabled=True,
                cost_per_minute_minor=15,
            )

    def test_rejects_negative_reserved(self):
        with pytest.raises(ValueError, match="Reserved credits cannot be negative"):
            BalanceSnapshot(
                account_id="org-1",
                available_minor=0,
                reserved_minor=-1,
                billing_enabled=True,
                cost_per_minute_minor=15,
            )


class TestFinalizeRequest:
    """Tests for the finalize request body."""

    def test_accepts_cost(self):
        request = FinalizeRequest(account_id="org-1", call_id="call-1", actual_cost_minor=7)
        assert request.duration_seconds is None

    def test_accepts_duration(self):
        request = FinalizeRequest(account_id="org-1", call_id="call-1", duration_seconds=61)
        assert request.actual_cost_minor is None

    def test_rejects_both_cost_sources(self):
        with pytest.raises(ValueError, match="exactly one"):
            FinalizeRequest(
                account_id="org-1", call_id="call-1", actual_cost_minor=7, duration_seconds=61
            )

    def test_rejects_missing_cost_source(self):
        with pytest.raises(ValueError, match="exactly one"):
            FinalizeRequest(account_id="org-1", call_id="call-1")
