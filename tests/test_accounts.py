"""
Tests for AccountService: account lifecycle, funding, and settings.
"""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from creditguard.db.models import CallCostRecord
from creditguard.exceptions import AccountNotFoundError, IdempotencyConflictError
from creditguard.models.api import TransactionType
from creditguard.services.accounts import AccountService
from creditguard.services.finalization import FinalizationManager
from creditguard.services.reservations import ReservationManager


class TestGetOrCreateAccount:
    """Account upsert."""

    async def test_creates_with_defaults(self, db_session: AsyncSession):
        snapshot = await AccountService(db_session).get_or_create_account("org-new")

        assert snapshot.account_id == "org-new"
        assert snapshot.available_minor == 0
        assert snapshot.reserved_minor == 0
        assert snapshot.billing_enabled is True
        assert snapshot.cost_per_minute_minor == 15

    async def test_existing_account_is_unchanged(
        self, db_session: AsyncSession, funded_account: str
    ):
        snapshot = await AccountService(db_session).get_or_create_account(
            funded_account, billing_enabled=False, cost_per_minute_minor=99
        )

        assert snapshot.available_minor == 100
        assert snapshot.billing_enabled is True
        assert snapshot.cost_per_minute_minor == 15

    async def test_rejects_blank_id(self, db_session: AsyncSession):
        with pytest.raises(ValueError, match="account_id cannot be empty"):
            await AccountService(db_session).get_or_create_account("   ")


class TestAddCredits:
    """Deposits."""

    async def test_increases_available(self, db_session: AsyncSession, funded_account: str):
        deposit = await AccountService(db_session).add_credits(funded_account, 50, "Top-up")

        assert deposit.available_before == 100
        assert deposit.available_after == 150
        assert deposit.amount_minor == 50

    async def test_duplicate_idempotency_key_conflicts(
        self, db_session: AsyncSession, funded_account: str, balance_reader
    ):
        service = AccountService(db_session)
        first = await service.add_credits(funded_account, 50, idempotency_key="pay-1")

        with pytest.raises(IdempotencyConflictError) as exc_info:
            await service.add_credits(funded_account, 50, idempotency_key="pay-1")

        assert exc_info.value.existing_id == first.transaction_id
        snapshot = await balance_reader(funded_account)
        assert snapshot.available_minor == 150

    async def test_unknown_account(self, db_session: AsyncSession):
        with pytest.raises(AccountNotFoundError):
            await AccountService(db_session).add_credits("org-missing", 50)

    async def test_rejects_non_positive_amount(self, db_session: AsyncSession):
        with pytest.raises(ValueError, match="must be positive"):
            await AccountService(db_session).add_credits("org-1", 0)


class TestCreditStatus:
    """Dashboard status."""

    async def test_reports_minutes_and_reservations(
        self, db_session: AsyncSession, funded_account: str
    ):
        await ReservationManager(db_session).reserve_credits(funded_account, 10, call_id="c-1")

        status = await AccountService(db_session).get_credit_status(funded_account)

        assert status.available_minor == 90
        assert status.reserved_minor == 10
        assert status.minutes_remaining == 6
        assert status.active_reservations == 1
        assert status.is_low_balance is True

    async def test_unmetered_account_is_never_low(
        self, db_session: AsyncSession, unmetered_account: str
    ):
        status = await AccountService(db_session).get_credit_status(unmetered_account)

        assert status.billing_enabled is False
        assert status.is_low_balance is False

    async def test_unknown_account(self, db_session: AsyncSession):
        with pytest.raises(AccountNotFoundError):
            await AccountService(db_session).get_credit_status("org-missing")


class TestUpdateSettings:
    """Billing settings changes."""

    async def test_writes_only_given_fields(
        self, db_session: AsyncSession, funded_account: str, balance_reader
    ):
        updated = await AccountService(db_session).update_settings(
            funded_account, billing_enabled=False, cost_per_minute_minor=20
        )

        assert updated == ["billing_enabled", "cost_per_minute_minor"]
        snapshot = await balance_reader(funded_account)
        assert snapshot.billing_enabled is False
        assert snapshot.cost_per_minute_minor == 20

    async def test_rejects_negative_values(self, db_session: AsyncSession, funded_account: str):
        with pytest.raises(ValueError, match="cannot be negative"):
            await AccountService(db_session).update_settings(
                funded_account, low_balance_threshold_minor=-1
            )

    async def test_unknown_account(self, db_session: AsyncSession):
        with pytest.raises(AccountNotFoundError):
            await AccountService(db_session).update_settings(
                "org-missing", billing_enabled=False
            )


class TestListTransactions:
    """Ledger history."""

    async def test_newest_first_with_total(self, db_session: AsyncSession, funded_account: str):
        await ReservationManager(db_session).reserve_credits(funded_account, 10, call_id="c-1")

        page, total = await AccountService(db_session).list_transactions(funded_account)

        assert total == 2
        assert [entry.transaction_type for entry in page] == [
            TransactionType.RESERVATION,
            TransactionType.DEPOSIT,
        ]
        reservation_entry = page[0]
        assert reservation_entry.available_before == 100
        assert reservation_entry.available_after == 90
        assert reservation_entry.reserved_after == 10
        assert reservation_entry.call_id == "c-1"

    async def test_pagination_and_type_filter(
        self, db_session: AsyncSession, funded_account: str
    ):
        service = AccountService(db_session)
        for _ in range(3):
            await service.add_credits(funded_account, 5)
        await ReservationManager(db_session).reserve_credits(funded_account, 10)

        page, total = await service.list_transactions(funded_account, limit=2, offset=1)
        assert total == 5
        assert len(page) == 2

        deposits, deposit_total = await service.list_transactions(
            funded_account, transaction_type=TransactionType.DEPOSIT
        )
        assert deposit_total == 4
        assert all(entry.transaction_type == TransactionType.DEPOSIT for entry in deposits)

    async def test_limit_is_clamped(self, db_session: AsyncSession, funded_account: str):
        page, total = await AccountService(db_session).list_transactions(funded_account, limit=0)

        assert total == 1
        assert len(page) == 1

    async def test_unknown_account(self, db_session: AsyncSession):
        with pytest.raises(AccountNotFoundError):
            await AccountService(db_session).list_transactions("org-missing")


class TestCheckAutoRecharge:
    """Auto-recharge trigger evaluation."""

    async def test_disabled_by_default(self, db_session: AsyncSession, funded_account: str):
        data = await AccountService(db_session).check_auto_recharge(funded_account)

        assert data.needs_recharge is False

    async def test_triggers_at_threshold(self, db_session: AsyncSession, funded_account: str):
        service = AccountService(db_session)
        await service.update_settings(
            funded_account,
            auto_recharge_enabled=True,
            auto_recharge_trigger_minor=100,
            auto_recharge_amount_minor=2000,
        )

        data = await service.check_auto_recharge(funded_account)

        assert data.needs_recharge is True
        assert data.recharge_amount_minor == 2000
        assert data.available_minor == 100

    async def test_zero_amount_never_triggers(
        self, db_session: AsyncSession, funded_account: str
    ):
        service = AccountService(db_session)
        await service.update_settings(
            funded_account, auto_recharge_enabled=True, auto_recharge_trigger_minor=500
        )

        data = await service.check_auto_recharge(funded_account)

        assert data.needs_recharge is False


async def _settle(session: AsyncSession, account_id: str, call_id: str, **cost) -> None:
    reserved = await ReservationManager(session).reserve_credits(account_id, 20, call_id=call_id)
    manager = FinalizationManager(session)
    if "duration_seconds" in cost:
        await manager.finalize_call_duration(
            account_id, reserved.value.reservation_id, call_id, **cost
        )
    else:
        await manager.finalize_call_cost(
            account_id, reserved.value.reservation_id, call_id, cost["actual_cost_minor"]
        )


class TestUsageSummary:
    """Settled-call aggregates over a trailing window."""

    async def test_totals_and_margin(self, db_session: AsyncSession, funded_account: str):
        await _settle(
            db_session, funded_account, "call-u1", duration_seconds=61, provider_cost_minor=5
        )
        await _settle(db_session, funded_account, "call-u2", actual_cost_minor=7)

        usage = await AccountService(db_session).get_usage_summary(funded_account)

        assert usage.days == 30
        assert usage.total_calls == 2
        assert usage.total_minutes == 2
        assert usage.billed_cost_minor == 24
        assert usage.deducted_minor == 24
        assert usage.shortfall_minor == 0
        assert usage.provider_cost_minor == 5
        assert usage.margin_minor == 12
        assert usage.margin_percent == 50

    async def test_daily_buckets(self, db_session: AsyncSession, funded_account: str):
        await _settle(
            db_session, funded_account, "call-u1", duration_seconds=61, provider_cost_minor=5
        )
        await _settle(db_session, funded_account, "call-u2", actual_cost_minor=7)

        usage = await AccountService(db_session).get_usage_summary(funded_account, days=7)

        assert len(usage.daily) == 1
        day = usage.daily[0]
        assert day.day == datetime.now(UTC).date()
        assert day.total_calls == 2
        assert day.total_minutes == 2
        assert day.total_cost_minor == 24
        assert day.average_call_seconds == 31

    async def test_window_excludes_older_calls(
        self, db_session: AsyncSession, funded_account: str
    ):
        await _settle(db_session, funded_account, "call-old", actual_cost_minor=7)
        await db_session.execute(
            update(CallCostRecord)
            .where(CallCostRecord.call_id == "call-old")
            .values(finalized_at=datetime.now(UTC) - timedelta(days=40))
        )
        await db_session.commit()
        service = AccountService(db_session)

        recent = await service.get_usage_summary(funded_account, days=30)
        wider = await service.get_usage_summary(funded_account, days=60)

        assert recent.total_calls == 0
        assert recent.daily == ()
        assert recent.margin_percent == 0
        assert wider.total_calls == 1
        assert wider.billed_cost_minor == 7

    async def test_other_accounts_not_counted(
        self, db_session: AsyncSession, funded_account: str, account_factory
    ):
        other = await account_factory(account_id="org-2")
        await _settle(db_session, other, "call-theirs", actual_cost_minor=7)

        usage = await AccountService(db_session).get_usage_summary(funded_account)

        assert usage.total_calls == 0

    async def test_rejects_out_of_range_days(
        self, db_session: AsyncSession, funded_account: str
    ):
        with pytest.raises(ValueError):
            await AccountService(db_session).get_usage_summary(funded_account, days=0)

    async def test_unknown_account(self, db_session: AsyncSession):
        with pytest.raises(AccountNotFoundError):
            await AccountService(db_session).get_usage_summary("org-missing")
