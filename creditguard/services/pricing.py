"""
Call Pricing - Duration to cost conversion in minor units.

Fractional values are computed with Decimal and always rounded up to the next
whole minor unit, so the account is never under-charged by rounding.
"""

from decimal import ROUND_CEILING, Decimal

BILLING_INCREMENT_TENTHS = 10  # Minutes are billed in 0.1 minute steps


def is_billable(duration_seconds: int, min_billable_seconds: int) -> bool:
    """Calls shorter than the minimum (instant hangups, failed connects) are free."""
    return duration_seconds >= min_billable_seconds and duration_seconds > 0


def billed_minutes(duration_seconds: int, min_billable_seconds: int) -> Decimal:
    """
    Minutes charged for a call, rounded up to the next tenth of a minute.

    Example: 61 seconds -> 1.1 minutes, 5 seconds (below minimum) -> 0.
    """
    if duration_seconds < 0:
        raise ValueError(f"Duration cannot be negative: {duration_seconds}")
    if not is_billable(duration_seconds, min_billable_seconds):
        return Decimal(0)

    tenths = -(-duration_seconds * BILLING_INCREMENT_TENTHS // 60)
    return Decimal(tenths) / BILLING_INCREMENT_TENTHS


def call_cost_minor(
    duration_seconds: int, cost_per_minute_minor: int, min_billable_seconds: int
) -> int:
    """Billed cost of a call in minor units."""
    if cost_per_minute_minor < 0:
        raise ValueError(f"Rate cannot be negative: {cost_per_minute_minor}")

    minutes = billed_minutes(duration_seconds, min_billable_seconds)
    cost = (minutes * cost_per_minute_minor).to_integral_value(rounding=ROUND_CEILING)
    return int(cost)


def margin_minor(billed_cost_minor: int, provider_cost_minor: int | None) -> int | None:
    """Billed cost minus what the telephony provider charged, when known."""
    if provider_cost_minor is None:
        return None
    return billed_cost_minor - provider_cost_minor


def batch_cost_minor(call_count: int, minutes_per_call: int, cost_per_minute_minor: int) -> int:
    """Estimated cost of a broadcast batch."""
    return call_count * minutes_per_call * cost_per_minute_minor


def calls_affordable(
    available_minor: int, call_count: int, minutes_per_call: int, cost_per_minute_minor: int
) -> int:
    """How many calls of the estimated length the available balance covers."""
    per_call = minutes_per_call * cost_per_minute_minor
    if per_call <= 0:
        return call_count
    return available_minor // per_call
