"""
Account Service - Billing records, top-ups, settings, and ledger history.

NO DICTIONARIES - All operations use strongly typed domain models.

Unlike the guard managers, this service raises typed exceptions
(AccountNotFoundError, IdempotencyConflictError) straight to the caller.
"""

from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from creditguard.config import Settings, get_settings
from creditguard.db.models import CallCostRecord, CreditAccount, CreditTransaction
from creditguard.exceptions import (
    AccountNotFoundError,
    IdempotencyConflictError,
    WriteVerificationError,
)
from creditguard.models.api import TransactionType
from creditguard.models.domain import (
    AutoRechargeData,
    BalanceSnapshot,
    CreditStatusData,
    DepositData,
    DepositIntent,
    TransactionData,
    UsageDayData,
    UsageSummaryData,
    require_id,
)
from creditguard.observability.logging import get_logger
from creditguard.services.balance_store import BalanceStore, as_utc, snapshot_of

logger = get_logger(__name__)

MAX_TRANSACTION_PAGE = 100
MAX_USAGE_DAYS = 365


def _transaction_to_domain(entry: CreditTransaction) -> TransactionData:
    """Convert ORM transaction to domain model."""
    return TransactionData(
        transaction_id=entry.id,
        account_id=entry.account_id,
        transaction_type=TransactionType(entry.transaction_type),
        amount_minor=entry.amount_minor,
        available_before=entry.available_before,
        available_after=entry.available_after,
        reserved_before=entry.reserved_before,
        reserved_after=entry.reserved_after,
        reservation_id=entry.reservation_id,
        call_id=entry.call_id,
        description=entry.description,
        created_at=as_utc(entry.created_at),
    )


def _whole_minutes(duration_seconds: int | None) -> int:
    return -(-(duration_seconds or 0) // 60)


def _rounded(numerator: int, denominator: int) -> int:
    """Half-up integer division."""
    quotient = Decimal(numerator) / Decimal(denominator)
    return int(quotient.to_integral_value(rounding=ROUND_HALF_UP))


class AccountService:
    """Account lifecycle and funding."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.store = BalanceStore(session)

    async def get_or_create_account(
        self,
        account_id: str,
        billing_enabled: bool = True,
        cost_per_minute_minor: int | None = None,
    ) -> BalanceSnapshot:
        """
        Get existing account or create new one (upsert).

        Returns existing account unchanged if found.
        """
        require_id("account_id", account_id)
        if cost_per_minute_minor is not None and cost_per_minute_minor < 0:
            raise ValueError(f"Rate cannot be negative: {cost_per_minute_minor}")

        account = await self.store.find_account(account_id)
        if account is not None:
            snapshot = snapshot_of(account)
            await self.session.commit()
            return snapshot

        new_account = CreditAccount(
            account_id=account_id,
            available_minor=0,
            reserved_minor=0,
            billing_enabled=billing_enabled,
            cost_per_minute_minor=(
                self.settings.default_cost_per_minute_minor
                if cost_per_minute_minor is None
                else cost_per_minute_minor
            ),
            low_balance_threshold_minor=self.settings.default_low_balance_threshold_minor,
            auto_recharge_enabled=False,
            auto_recharge_trigger_minor=self.settings.default_auto_recharge_trigger_minor,
            auto_recharge_amount_minor=0,
        )
        self.session.add(new_account)

        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - account created by another request
            await self.session.rollback()
            account = await self.store.find_account(account_id)
            if account is None:
                raise WriteVerificationError("Account creation failed due to race condition")
            snapshot = snapshot_of(account)
            await self.session.commit()
            return snapshot

        verified = await self.session.get(CreditAccount, account_id)
        if verified is None:
            raise WriteVerificationError(f"Account {account_id} not found after insert")

        snapshot = snapshot_of(verified)
        await self.session.commit()

        logger.info(
            "account_created",
            account_id=account_id,
            billing_enabled=billing_enabled,
            cost_per_minute_minor=snapshot.cost_per_minute_minor,
        )
        return snapshot

    async def add_credits(
        self,
        account_id: str,
        amount_minor: int,
        description: str = "Credit deposit",
        idempotency_key: str | None = None,
    ) -> DepositData:
        """
        Add credits to an account's available balance.

        This operation requires:
        1. Row-level locking
        2. Atomic balance update
        3. Write verification

        Raises:
            AccountNotFoundError: Account doesn't exist
            IdempotencyConflictError: Duplicate idempotency key
        """
        intent = DepositIntent(
            account_id=account_id,
            amount_minor=amount_minor,
            description=description,
            idempotency_key=idempotency_key,
        )

        try:
            if intent.idempotency_key:
                existing = await self.store.find_transaction_by_idempotency(
                    intent.idempotency_key
                )
                if existing is not None:
                    raise IdempotencyConflictError(existing.id)

            account = await self.store.lock_account(intent.account_id)
            available_before = account.available_minor

            entry = await self.store.apply_balance(
                account,
                available_after=available_before + intent.amount_minor,
                reserved_after=account.reserved_minor,
                transaction_type=TransactionType.DEPOSIT,
                amount_minor=intent.amount_minor,
                description=intent.description,
                idempotency_key=intent.idempotency_key,
            )
            data = DepositData(
                transaction_id=entry.id,
                account_id=entry.account_id,
                amount_minor=entry.amount_minor,
                available_before=entry.available_before,
                available_after=entry.available_after,
                created_at=as_utc(entry.created_at),
            )
            await self.session.commit()
        except IntegrityError:
            # Concurrent deposit with the same idempotency key
            await self.session.rollback()
            if intent.idempotency_key:
                existing = await self.store.find_transaction_by_idempotency(
                    intent.idempotency_key
                )
                await self.session.commit()
                if existing is not None:
                    raise IdempotencyConflictError(existing.id)
            raise
        except (AccountNotFoundError, IdempotencyConflictError):
            await self.session.rollback()
            raise

        logger.info(
            "credits_added",
            account_id=intent.account_id,
            amount_minor=intent.amount_minor,
            available_after=data.available_after,
            transaction_id=str(data.transaction_id),
        )
        return data

    async def get_credit_status(self, account_id: str) -> CreditStatusData:
        """
        Balance, minutes remaining at the account's rate, and alert flags.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._get_account(account_id)
        active = await self.store.count_active_reservations(account_id)

        rate = account.cost_per_minute_minor
        status = CreditStatusData(
            account_id=account.account_id,
            billing_enabled=account.billing_enabled,
            available_minor=account.available_minor,
            reserved_minor=account.reserved_minor,
            cost_per_minute_minor=rate,
            minutes_remaining=account.available_minor // rate if rate > 0 else 0,
            is_low_balance=(
                account.billing_enabled
                and account.available_minor <= account.low_balance_threshold_minor
            ),
            low_balance_threshold_minor=account.low_balance_threshold_minor,
            auto_recharge_enabled=account.auto_recharge_enabled,
            active_reservations=active,
        )
        await self.session.commit()
        return status

    async def update_settings(
        self,
        account_id: str,
        *,
        billing_enabled: bool | None = None,
        cost_per_minute_minor: int | None = None,
        low_balance_threshold_minor: int | None = None,
        auto_recharge_enabled: bool | None = None,
        auto_recharge_trigger_minor: int | None = None,
        auto_recharge_amount_minor: int | None = None,
    ) -> list[str]:
        """
        Update billing settings. Fields left as None are unchanged.

        Returns the names of the fields that were written.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        changes: tuple[tuple[str, bool | int | None], ...] = (
            ("billing_enabled", billing_enabled),
            ("cost_per_minute_minor", cost_per_minute_minor),
            ("low_balance_threshold_minor", low_balance_threshold_minor),
            ("auto_recharge_enabled", auto_recharge_enabled),
            ("auto_recharge_trigger_minor", auto_recharge_trigger_minor),
            ("auto_recharge_amount_minor", auto_recharge_amount_minor),
        )
        for name, value in changes:
            if isinstance(value, int) and not isinstance(value, bool) and value < 0:
                raise ValueError(f"{name} cannot be negative: {value}")

        require_id("account_id", account_id)
        try:
            account = await self.store.lock_account(account_id)
        except AccountNotFoundError:
            await self.session.rollback()
            raise

        updated: list[str] = []
        for name, value in changes:
            if value is not None:
                setattr(account, name, value)
                updated.append(name)

        await self.session.commit()

        logger.info("account_settings_updated", account_id=account_id, fields=updated)
        return updated

    async def list_transactions(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        transaction_type: TransactionType | None = None,
    ) -> tuple[list[TransactionData], int]:
        """
        Ledger history, newest first.

        Returns (page, total_count). limit is clamped to 1..100.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        limit = max(1, min(limit, MAX_TRANSACTION_PAGE))
        offset = max(0, offset)
        await self._get_account(account_id)

        filters = [CreditTransaction.account_id == account_id]
        if transaction_type is not None:
            filters.append(CreditTransaction.transaction_type == transaction_type.value)

        count_stmt = select(func.count(CreditTransaction.id)).where(*filters)
        total = int((await self.session.execute(count_stmt)).scalar_one())

        stmt = (
            select(CreditTransaction)
            .where(*filters)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        page = [_transaction_to_domain(entry) for entry in result.scalars().all()]
        await self.session.commit()
        return page, total

    async def get_usage_summary(self, account_id: str, days: int = 30) -> UsageSummaryData:
        """
        Aggregate settled calls over the last `days` days.

        Daily buckets are keyed by the UTC date of finalization and ordered
        oldest first. Calls without a recorded duration count as zero minutes.

        Raises:
            AccountNotFoundError: Account doesn't exist
            ValueError: days outside 1..MAX_USAGE_DAYS
        """
        if not 1 <= days <= MAX_USAGE_DAYS:
            raise ValueError(f"days must be between 1 and {MAX_USAGE_DAYS}: {days}")
        await self._get_account(account_id)

        since = datetime.now(UTC) - timedelta(days=days)
        stmt = (
            select(CallCostRecord)
            .where(
                CallCostRecord.account_id == account_id,
                CallCostRecord.finalized_at >= since,
            )
            .order_by(CallCostRecord.finalized_at)
        )
        result = await self.session.execute(stmt)
        records = list(result.scalars().all())

        buckets: dict[date, list[CallCostRecord]] = {}
        for record in records:
            buckets.setdefault(as_utc(record.finalized_at).date(), []).append(record)

        daily = tuple(
            UsageDayData(
                day=day,
                total_calls=len(calls),
                total_minutes=sum(_whole_minutes(c.duration_seconds) for c in calls),
                total_cost_minor=sum(c.actual_cost_minor for c in calls),
                average_call_seconds=_rounded(
                    sum(c.duration_seconds or 0 for c in calls), len(calls)
                ),
            )
            for day, calls in sorted(buckets.items())
        )

        billed = sum(r.actual_cost_minor for r in records)
        margin = sum(r.margin_minor or 0 for r in records)
        summary = UsageSummaryData(
            account_id=account_id,
            days=days,
            total_calls=len(records),
            total_minutes=sum(day.total_minutes for day in daily),
            billed_cost_minor=billed,
            deducted_minor=sum(r.deducted_minor for r in records),
            shortfall_minor=sum(r.shortfall_minor for r in records),
            provider_cost_minor=sum(r.provider_cost_minor or 0 for r in records),
            margin_minor=margin,
            margin_percent=_rounded(margin * 100, billed) if billed else 0,
            daily=daily,
        )
        await self.session.commit()
        return summary

    async def mark_low_balance_alert_sent(self, account_id: str) -> None:
        """Start the low-balance alert cooldown for an account."""
        require_id("account_id", account_id)
        try:
            account = await self.store.lock_account(account_id)
        except AccountNotFoundError:
            await self.session.rollback()
            raise
        account.last_low_balance_alert_at = datetime.now(UTC)
        await self.session.commit()
        logger.info("low_balance_alert_marked", account_id=account_id)

    async def check_auto_recharge(self, account_id: str) -> AutoRechargeData:
        """
        Whether the account is at or below its auto-recharge trigger.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._get_account(account_id)
        needs_recharge = (
            account.billing_enabled
            and account.auto_recharge_enabled
            and account.auto_recharge_amount_minor > 0
            and account.available_minor <= account.auto_recharge_trigger_minor
        )
        data = AutoRechargeData(
            account_id=account.account_id,
            needs_recharge=needs_recharge,
            available_minor=account.available_minor,
            recharge_amount_minor=account.auto_recharge_amount_minor,
        )
        await self.session.commit()
        return data

    async def _get_account(self, account_id: str) -> CreditAccount:
        require_id("account_id", account_id)
        account = await self.store.find_account(account_id)
        if account is None:
            await self.session.rollback()
            raise AccountNotFoundError(account_id)
        return account
