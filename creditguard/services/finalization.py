"""
Finalization Manager - Settles reservations against actual call costs.

NO DICTIONARIES - All operations use strongly typed domain models.

finalize_call_cost() is idempotent on call_id: the call cost record is written
exactly once, and any retry (sequential or concurrent) gets that same record
back with replayed=True and no balance change.
"""

import time
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from creditguard.config import Settings, get_settings
from creditguard.db.models import CallCostRecord, CreditAccount, Reservation
from creditguard.exceptions import (
    AccountNotFoundError,
    ReservationNotFoundError,
    WriteVerificationError,
)
from creditguard.models.api import ReservationStatus, TransactionType
from creditguard.models.domain import (
    CallCostData,
    Err,
    FinalizationData,
    FinalizationIntent,
    GuardErrorKind,
    Ok,
    ReservationData,
    require_id,
)
from creditguard.observability.logging import get_logger
from creditguard.observability.metrics import metrics
from creditguard.observability.tracing import mark_outcome, trace_operation
from creditguard.services import pricing
from creditguard.services.balance_store import BalanceStore, as_utc

logger = get_logger(__name__)


def _record_to_domain(record: CallCostRecord) -> CallCostData:
    """Convert ORM call cost record to domain model."""
    return CallCostData(
        call_id=record.call_id,
        reservation_id=record.reservation_id,
        account_id=record.account_id,
        reserved_minor=record.reserved_minor,
        actual_cost_minor=record.actual_cost_minor,
        deducted_minor=record.deducted_minor,
        refunded_minor=record.refunded_minor,
        shortfall_minor=record.shortfall_minor,
        duration_seconds=record.duration_seconds,
        provider_cost_minor=record.provider_cost_minor,
        margin_minor=record.margin_minor,
        finalized_at=as_utc(record.finalized_at),
    )


class FinalizationManager:
    """
    Settles and releases reservations.

    All write operations follow the pattern:
    1. Lock the account row
    2. Execute write and flush
    3. Read back and verify
    4. Commit, or roll back on any failure
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.store = BalanceStore(session)

    # ========================================================================
    # Finalization
    # ========================================================================

    async def finalize_call_cost(
        self,
        account_id: str,
        reservation_id: UUID | None,
        call_id: str,
        actual_cost_minor: int,
    ) -> Ok[FinalizationData] | Err:
        """
        Settle a completed call at a known cost.

        reservation_id may be None, in which case the reservation is looked up
        by call_id. A zero cost releases the reservation instead of
        finalizing it; the zero-cost record is still written.
        """
        intent = FinalizationIntent(
            account_id=account_id,
            reservation_id=reservation_id,
            call_id=call_id,
            actual_cost_minor=actual_cost_minor,
        )
        return await self._settle(intent)

    async def finalize_call_duration(
        self,
        account_id: str,
        reservation_id: UUID | None,
        call_id: str,
        duration_seconds: int,
        provider_cost_minor: int | None = None,
    ) -> Ok[FinalizationData] | Err:
        """
        Settle a completed call priced from its duration at the account's rate.

        Calls shorter than min_billable_seconds cost nothing.
        """
        require_id("account_id", account_id)
        require_id("call_id", call_id)
        if duration_seconds < 0:
            raise ValueError(f"Duration cannot be negative: {duration_seconds}")

        try:
            snapshot = await self.store.get_balance(account_id)
        except AccountNotFoundError as e:
            await self.session.rollback()
            metrics.record_operation("finalize", "account_not_found", 0.0)
            return Err(GuardErrorKind.ACCOUNT_NOT_FOUND, str(e))

        cost = pricing.call_cost_minor(
            duration_seconds,
            snapshot.cost_per_minute_minor,
            self.settings.min_billable_seconds,
        )
        intent = FinalizationIntent(
            account_id=account_id,
            reservation_id=reservation_id,
            call_id=call_id,
            actual_cost_minor=cost,
            duration_seconds=duration_seconds,
            provider_cost_minor=provider_cost_minor,
        )
        return await self._settle(intent)

    async def _settle(self, intent: FinalizationIntent) -> Ok[FinalizationData] | Err:
        started = time.perf_counter()
        with trace_operation(
            "finalize_call_cost",
            account_id=intent.account_id,
            call_id=intent.call_id,
            reservation_id=intent.reservation_id,
            actual_cost_minor=intent.actual_cost_minor,
        ):
            try:
                data = await self._finalize(intent)
            except AccountNotFoundError as e:
                await self.session.rollback()
                metrics.record_operation(
                    "finalize", "account_not_found", time.perf_counter() - started
                )
                mark_outcome("account_not_found")
                logger.error("finalize_no_account", account_id=intent.account_id)
                return Err(GuardErrorKind.ACCOUNT_NOT_FOUND, str(e))
            except ReservationNotFoundError as e:
                await self.session.rollback()
                metrics.record_operation(
                    "finalize", "reservation_not_found", time.perf_counter() - started
                )
                mark_outcome("reservation_not_found")
                logger.error(
                    "finalize_reservation_not_found",
                    account_id=intent.account_id,
                    call_id=intent.call_id,
                    reference=str(e.reference),
                    reason=e.reason,
                )
                return Err(GuardErrorKind.RESERVATION_NOT_FOUND, str(e))

            if data.replayed:
                outcome = "replayed"
            elif not data.billing_enabled:
                outcome = "bypassed"
            else:
                outcome = "ok"
                if data.record is not None:
                    metrics.record_settlement(
                        data.record.actual_cost_minor, data.record.shortfall_minor
                    )
            mark_outcome(outcome)

        metrics.record_operation("finalize", outcome, time.perf_counter() - started)
        return Ok(data)

    async def _finalize(self, intent: FinalizationIntent) -> FinalizationData:
        account = await self.store.lock_account(intent.account_id)

        # A settled call replays its record even if billing was switched off since
        existing = await self.store.find_cost_record(intent.call_id)
        if existing is not None:
            return await self._replayed(intent, existing, account)

        if not account.billing_enabled:
            await self.session.commit()
            logger.debug("finalize_bypassed", account_id=intent.account_id, call_id=intent.call_id)
            return FinalizationData(
                account_id=intent.account_id,
                record=None,
                billing_enabled=False,
                replayed=False,
                available_after=account.available_minor,
                reserved_after=account.reserved_minor,
            )

        reservation = await self._resolve_reservation(intent)
        reserved = reservation.amount_minor
        cost = intent.actual_cost_minor

        # Never drive available below zero; the uncollected part is recorded.
        deducted = min(cost, reserved + account.available_minor)
        shortfall = cost - deducted
        refunded = max(reserved - cost, 0)
        available_after = account.available_minor + reserved - deducted
        reserved_after = account.reserved_minor - reserved

        now = datetime.now(UTC)
        released = cost == 0
        reservation_id = reservation.id

        try:
            reservation.status = (
                ReservationStatus.RELEASED.value if released else ReservationStatus.FINALIZED.value
            )
            reservation.settled_at = now

            record = CallCostRecord(
                call_id=intent.call_id,
                reservation_id=reservation_id,
                account_id=intent.account_id,
                reserved_minor=reserved,
                actual_cost_minor=cost,
                deducted_minor=deducted,
                refunded_minor=refunded,
                shortfall_minor=shortfall,
                duration_seconds=intent.duration_seconds,
                provider_cost_minor=intent.provider_cost_minor,
                margin_minor=intent.margin_minor,
                finalized_at=now,
            )
            self.session.add(record)

            await self.store.apply_balance(
                account,
                available_after=available_after,
                reserved_after=reserved_after,
                transaction_type=(
                    TransactionType.RELEASE if released else TransactionType.DEDUCTION
                ),
                amount_minor=reserved if released else deducted,
                description=(
                    f"Zero-cost call {intent.call_id}: reservation released"
                    if released
                    else f"Call cost {intent.call_id}: reserved {reserved}, "
                    f"charged {deducted}, refunded {refunded}"
                ),
                reservation_id=reservation_id,
                call_id=intent.call_id,
            )

            verified = await self.session.get(CallCostRecord, intent.call_id)
            if verified is None:
                raise WriteVerificationError(
                    f"Call cost record {intent.call_id} not found after insert"
                )

            low_balance_alert = self._needs_low_balance_alert(account, available_after, now)
            auto_recharge_needed = (
                account.auto_recharge_enabled
                and available_after <= account.auto_recharge_trigger_minor
            )
            await self.session.commit()
        except IntegrityError as e:
            # Concurrent finalize for the same call_id won the insert
            logger.warning(
                "finalize_integrity_error",
                call_id=intent.call_id,
                error=str(e.orig),
            )
            await self.session.rollback()
            existing = await self.store.find_cost_record(intent.call_id)
            if existing is None:
                raise
            snapshot = await self.store.get_balance(intent.account_id)
            await self.session.commit()
            return FinalizationData(
                account_id=intent.account_id,
                record=_record_to_domain(existing),
                billing_enabled=True,
                replayed=True,
                available_after=snapshot.available_minor,
                reserved_after=snapshot.reserved_minor,
            )

        if shortfall:
            logger.warning(
                "call_cost_shortfall",
                account_id=intent.account_id,
                call_id=intent.call_id,
                actual_cost_minor=cost,
                shortfall_minor=shortfall,
            )
        logger.info(
            "call_cost_finalized",
            account_id=intent.account_id,
            call_id=intent.call_id,
            reservation_id=str(reservation_id),
            reserved_minor=reserved,
            actual_cost_minor=cost,
            refunded_minor=refunded,
            available_after=available_after,
            reserved_after=reserved_after,
            released=released,
        )

        return FinalizationData(
            account_id=intent.account_id,
            record=_record_to_domain(verified),
            billing_enabled=True,
            replayed=False,
            available_after=available_after,
            reserved_after=reserved_after,
            low_balance_alert=low_balance_alert,
            auto_recharge_needed=auto_recharge_needed,
        )

    async def _replayed(
        self, intent: FinalizationIntent, existing: CallCostRecord, account: CreditAccount
    ) -> FinalizationData:
        if existing.account_id != intent.account_id:
            raise ReservationNotFoundError(intent.call_id, "call belongs to another account")

        data = FinalizationData(
            account_id=intent.account_id,
            record=_record_to_domain(existing),
            billing_enabled=True,
            replayed=True,
            available_after=account.available_minor,
            reserved_after=account.reserved_minor,
        )
        await self.session.commit()
        logger.info(
            "finalization_replayed",
            account_id=intent.account_id,
            call_id=intent.call_id,
            reservation_id=str(existing.reservation_id),
        )
        return data

    async def _resolve_reservation(self, intent: FinalizationIntent) -> Reservation:
        reference: UUID | str
        if intent.reservation_id is not None:
            reference = intent.reservation_id
            reservation = await self.store.find_reservation(intent.reservation_id)
        else:
            reference = intent.call_id
            reservation = await self.store.find_reservation_by_call_id(intent.call_id)

        if reservation is None or reservation.account_id != intent.account_id:
            raise ReservationNotFoundError(reference)
        if reservation.status != ReservationStatus.ACTIVE.value:
            raise ReservationNotFoundError(reference, f"not active ({reservation.status})")
        return reservation

    def _needs_low_balance_alert(
        self, account: CreditAccount, available_after: int, now: datetime
    ) -> bool:
        if available_after > account.low_balance_threshold_minor:
            return False
        if account.last_low_balance_alert_at is None:
            return True
        cooldown = timedelta(hours=self.settings.low_balance_alert_cooldown_hours)
        return now - as_utc(account.last_low_balance_alert_at) >= cooldown

    # ========================================================================
    # Release
    # ========================================================================

    async def release_reservation(
        self, account_id: str, reservation_id: UUID
    ) -> Ok[ReservationData] | Err:
        """
        Return a reservation's full amount to available (call never connected).

        Releasing a reservation that is already released or finalized is a
        no-op that returns replayed=True.
        """
        require_id("account_id", account_id)
        return await self._release_with_result(account_id, reservation_id, sweep=False)

    async def _release_with_result(
        self, account_id: str, reservation_id: UUID, sweep: bool
    ) -> Ok[ReservationData] | Err:
        started = time.perf_counter()
        with trace_operation(
            "release_reservation", account_id=account_id, reservation_id=reservation_id
        ):
            try:
                data = await self._release(account_id, reservation_id, sweep)
            except AccountNotFoundError as e:
                await self.session.rollback()
                metrics.record_operation(
                    "release", "account_not_found", time.perf_counter() - started
                )
                mark_outcome("account_not_found")
                logger.warning("release_no_account", account_id=account_id)
                return Err(GuardErrorKind.ACCOUNT_NOT_FOUND, str(e))
            except ReservationNotFoundError as e:
                await self.session.rollback()
                metrics.record_operation(
                    "release", "reservation_not_found", time.perf_counter() - started
                )
                mark_outcome("reservation_not_found")
                logger.warning(
                    "release_reservation_not_found",
                    account_id=account_id,
                    reservation_id=str(reservation_id),
                )
                return Err(GuardErrorKind.RESERVATION_NOT_FOUND, str(e))

            if data.replayed:
                outcome = "replayed"
            elif not data.billing_enabled:
                outcome = "bypassed"
            else:
                outcome = "ok"
            mark_outcome(outcome)

        metrics.record_operation("release", outcome, time.perf_counter() - started)
        return Ok(data)

    async def _release(self, account_id: str, reservation_id: UUID, sweep: bool) -> ReservationData:
        account = await self.store.lock_account(account_id)

        # The operator sweep returns stale holds even if billing was switched off since
        if not account.billing_enabled and not sweep:
            await self.session.commit()
            return ReservationData(
                reservation_id=reservation_id,
                account_id=account_id,
                amount_minor=0,
                status=None,
                call_id=None,
                billing_enabled=False,
                replayed=False,
                available_after=account.available_minor,
                reserved_after=account.reserved_minor,
            )

        reservation = await self.store.find_reservation(reservation_id)
        if reservation is None or reservation.account_id != account_id:
            raise ReservationNotFoundError(reservation_id)

        if reservation.status != ReservationStatus.ACTIVE.value:
            data = ReservationData(
                reservation_id=reservation.id,
                account_id=account_id,
                amount_minor=reservation.amount_minor,
                status=ReservationStatus(reservation.status),
                call_id=reservation.call_id,
                billing_enabled=account.billing_enabled,
                replayed=True,
                available_after=account.available_minor,
                reserved_after=account.reserved_minor,
                created_at=reservation.created_at,
            )
            await self.session.commit()
            logger.info(
                "release_noop",
                account_id=account_id,
                reservation_id=str(reservation_id),
                status=reservation.status,
            )
            return data

        amount = reservation.amount_minor
        reservation.status = ReservationStatus.RELEASED.value
        reservation.settled_at = datetime.now(UTC)

        await self.store.apply_balance(
            account,
            available_after=account.available_minor + amount,
            reserved_after=account.reserved_minor - amount,
            transaction_type=TransactionType.RELEASE,
            amount_minor=amount,
            description=(
                f"Stale reservation {reservation.id} released"
                if sweep
                else f"Reservation {reservation.id} released"
            ),
            reservation_id=reservation.id,
            call_id=reservation.call_id,
        )

        data = ReservationData(
            reservation_id=reservation.id,
            account_id=account_id,
            amount_minor=amount,
            status=ReservationStatus.RELEASED,
            call_id=reservation.call_id,
            billing_enabled=account.billing_enabled,
            replayed=False,
            available_after=account.available_minor,
            reserved_after=account.reserved_minor,
            created_at=reservation.created_at,
        )
        await self.session.commit()

        logger.info(
            "reservation_released",
            account_id=account_id,
            reservation_id=str(reservation.id),
            amount_minor=amount,
            available_after=data.available_after,
            reserved_after=data.reserved_after,
            sweep=sweep,
        )
        return data

    # ========================================================================
    # Operator sweep
    # ========================================================================

    async def list_stale_reservations(self, older_than: timedelta) -> list[tuple[UUID, str]]:
        """Active reservations created before now - older_than, as (id, account_id)."""
        cutoff = datetime.now(UTC) - older_than
        stale = await self.store.list_stale_reservation_ids(cutoff)
        await self.session.commit()
        return stale

    async def release_stale_reservations(self, older_than: timedelta) -> list[ReservationData]:
        """
        Release every active reservation older than older_than.

        Each release runs in its own transaction, so a failure on one account
        leaves the others released. Returns the reservations actually released.
        """
        stale = await self.list_stale_reservations(older_than)
        released: list[ReservationData] = []

        for reservation_id, account_id in stale:
            result = await self._release_with_result(account_id, reservation_id, sweep=True)
            if isinstance(result, Err):
                logger.warning(
                    "stale_release_failed",
                    account_id=account_id,
                    reservation_id=str(reservation_id),
                    error=result.message,
                )
                continue
            if not result.value.replayed:
                released.append(result.value)

        logger.info(
            "stale_reservations_swept",
            candidates=len(stale),
            released=len(released),
            older_than_minutes=int(older_than.total_seconds() // 60),
        )
        return released
