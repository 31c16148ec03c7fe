"""
Reservation Manager - Pre-call balance checks and credit holds.

NO DICTIONARIES - All operations use strongly typed domain models.

reserve_credits() holds the account row lock for the whole
read-check-write, so concurrent reservations against one account are
serialized and can never jointly overspend the available balance.
"""

import time

from sqlalchemy.ext.asyncio import AsyncSession

from creditguard.config import Settings, get_settings
from creditguard.db.models import Reservation
from creditguard.exceptions import (
    AccountNotFoundError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    WriteVerificationError,
)
from creditguard.models.api import ReservationStatus, TransactionType
from creditguard.models.domain import (
    BalanceCheckData,
    BatchCheckData,
    Err,
    GuardErrorKind,
    Ok,
    ReservationData,
    ReservationIntent,
    require_id,
)
from creditguard.observability.logging import get_logger
from creditguard.observability.metrics import metrics
from creditguard.observability.tracing import mark_outcome, trace_operation
from creditguard.services import pricing
from creditguard.services.balance_store import BalanceStore

logger = get_logger(__name__)


class ReservationManager:
    """
    Guards call initiation against overspending.

    Expected failures come back as Err values; the ledger is untouched when
    an Err is returned.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.store = BalanceStore(session)

    async def check_credit_balance(
        self, account_id: str, estimated_amount_minor: int | None = None
    ) -> Ok[BalanceCheckData] | Err:
        """
        Read-only pre-check before dialing. Nothing is held.

        Billing-disabled accounts always pass.
        """
        require_id("account_id", account_id)
        required = (
            self.settings.default_reservation_minor
            if estimated_amount_minor is None
            else estimated_amount_minor
        )
        if required < 0:
            raise ValueError(f"Estimated amount cannot be negative: {required}")

        started = time.perf_counter()
        try:
            snapshot = await self.store.get_balance(account_id)
        except AccountNotFoundError as e:
            await self.session.rollback()
            metrics.record_operation("check", "account_not_found", time.perf_counter() - started)
            logger.warning("balance_check_no_account", account_id=account_id)
            return Err(GuardErrorKind.ACCOUNT_NOT_FOUND, str(e))
        await self.session.commit()

        data = BalanceCheckData(
            account_id=account_id,
            billing_enabled=snapshot.billing_enabled,
            available_minor=snapshot.available_minor,
            reserved_minor=snapshot.reserved_minor,
            required_minor=required,
            cost_per_minute_minor=snapshot.cost_per_minute_minor,
        )

        if snapshot.billing_enabled and snapshot.available_minor < required:
            metrics.record_operation(
                "check", "insufficient_credits", time.perf_counter() - started
            )
            logger.info(
                "balance_check_insufficient",
                account_id=account_id,
                available_minor=snapshot.available_minor,
                required_minor=required,
            )
            return Err(
                GuardErrorKind.INSUFFICIENT_CREDITS,
                str(InsufficientCreditsError(snapshot.available_minor, required)),
            )

        outcome = "ok" if snapshot.billing_enabled else "bypassed"
        metrics.record_operation("check", outcome, time.perf_counter() - started)
        return Ok(data)

    async def check_batch_credits(
        self, account_id: str, call_count: int, estimated_minutes_per_call: int = 2
    ) -> Ok[BatchCheckData] | Err:
        """
        Pre-check a broadcast batch against the available balance.

        can_proceed is False when the whole batch is not covered; the caller
        may still dial calls_affordable of them.
        """
        require_id("account_id", account_id)
        if call_count < 0:
            raise ValueError(f"Call count cannot be negative: {call_count}")
        if estimated_minutes_per_call <= 0:
            raise ValueError(
                f"Estimated minutes per call must be positive: {estimated_minutes_per_call}"
            )

        try:
            snapshot = await self.store.get_balance(account_id)
        except AccountNotFoundError as e:
            await self.session.rollback()
            return Err(GuardErrorKind.ACCOUNT_NOT_FOUND, str(e))
        await self.session.commit()

        if not snapshot.billing_enabled:
            return Ok(
                BatchCheckData(
                    account_id=account_id,
                    can_proceed=True,
                    billing_enabled=False,
                    available_minor=snapshot.available_minor,
                    estimated_cost_minor=0,
                    calls_affordable=call_count,
                )
            )

        estimated = pricing.batch_cost_minor(
            call_count, estimated_minutes_per_call, snapshot.cost_per_minute_minor
        )
        affordable = pricing.calls_affordable(
            snapshot.available_minor,
            call_count,
            estimated_minutes_per_call,
            snapshot.cost_per_minute_minor,
        )
        logger.info(
            "batch_credit_check",
            account_id=account_id,
            call_count=call_count,
            estimated_cost_minor=estimated,
            calls_affordable=affordable,
        )
        return Ok(
            BatchCheckData(
                account_id=account_id,
                can_proceed=snapshot.available_minor >= estimated,
                billing_enabled=True,
                available_minor=snapshot.available_minor,
                estimated_cost_minor=estimated,
                calls_affordable=affordable,
            )
        )

    async def reserve_credits(
        self, account_id: str, amount_minor: int, call_id: str | None = None
    ) -> Ok[ReservationData] | Err:
        """
        Hold amount_minor for one call attempt.

        Retrying with the same call_id returns the existing reservation with
        replayed=True and moves no money.

        Raises:
            ValueError: Empty identifiers or non-positive amount
            IdempotencyConflictError: call_id already reserved by another account
        """
        intent = ReservationIntent(account_id=account_id, amount_minor=amount_minor, call_id=call_id)

        started = time.perf_counter()
        with trace_operation(
            "reserve_credits",
            account_id=intent.account_id,
            amount_minor=intent.amount_minor,
            call_id=intent.call_id,
        ):
            try:
                data = await self._reserve(intent)
            except InsufficientCreditsError as e:
                await self.session.rollback()
                metrics.record_operation(
                    "reserve", "insufficient_credits", time.perf_counter() - started
                )
                mark_outcome("insufficient_credits")
                logger.warning(
                    "reservation_denied",
                    account_id=intent.account_id,
                    call_id=intent.call_id,
                    available_minor=e.available,
                    required_minor=e.required,
                )
                return Err(GuardErrorKind.INSUFFICIENT_CREDITS, str(e))
            except AccountNotFoundError as e:
                await self.session.rollback()
                metrics.record_operation(
                    "reserve", "account_not_found", time.perf_counter() - started
                )
                mark_outcome("account_not_found")
                logger.warning("reservation_no_account", account_id=intent.account_id)
                return Err(GuardErrorKind.ACCOUNT_NOT_FOUND, str(e))
            except IdempotencyConflictError:
                await self.session.rollback()
                metrics.record_error("idempotency_conflict", "reserve")
                raise

            if data.replayed:
                outcome = "replayed"
            elif not data.billing_enabled:
                outcome = "bypassed"
            else:
                outcome = "ok"
                metrics.record_reservation(data.amount_minor)
            mark_outcome(outcome)

        metrics.record_operation("reserve", outcome, time.perf_counter() - started)
        return Ok(data)

    async def _reserve(self, intent: ReservationIntent) -> ReservationData:
        account = await self.store.lock_account(intent.account_id)

        if not account.billing_enabled:
            await self.session.commit()
            logger.debug("reservation_bypassed", account_id=intent.account_id)
            return ReservationData(
                reservation_id=None,
                account_id=intent.account_id,
                amount_minor=0,
                status=None,
                call_id=intent.call_id,
                billing_enabled=False,
                replayed=False,
                available_after=account.available_minor,
                reserved_after=account.reserved_minor,
            )

        if intent.call_id is not None:
            existing = await self.store.find_reservation_by_call_id(intent.call_id)
            if existing is not None:
                if existing.account_id != intent.account_id:
                    raise IdempotencyConflictError(existing.id)
                await self.session.commit()
                logger.info(
                    "reservation_replayed",
                    account_id=intent.account_id,
                    call_id=intent.call_id,
                    reservation_id=str(existing.id),
                )
                return ReservationData(
                    reservation_id=existing.id,
                    account_id=existing.account_id,
                    amount_minor=existing.amount_minor,
                    status=ReservationStatus(existing.status),
                    call_id=existing.call_id,
                    billing_enabled=True,
                    replayed=True,
                    available_after=account.available_minor,
                    reserved_after=account.reserved_minor,
                    created_at=existing.created_at,
                )

        if account.available_minor < intent.amount_minor:
            raise InsufficientCreditsError(account.available_minor, intent.amount_minor)

        reservation = Reservation(
            account_id=intent.account_id,
            amount_minor=intent.amount_minor,
            call_id=intent.call_id,
            status=ReservationStatus.ACTIVE.value,
        )
        self.session.add(reservation)
        await self.session.flush()

        verified = await self.session.get(Reservation, reservation.id)
        if verified is None:
            raise WriteVerificationError(f"Reservation {reservation.id} not found after insert")

        await self.store.apply_balance(
            account,
            available_after=account.available_minor - intent.amount_minor,
            reserved_after=account.reserved_minor + intent.amount_minor,
            transaction_type=TransactionType.RESERVATION,
            amount_minor=intent.amount_minor,
            description=f"Reserved for call {intent.call_id or verified.id}",
            reservation_id=verified.id,
            call_id=intent.call_id,
        )

        available_after = account.available_minor
        reserved_after = account.reserved_minor
        await self.session.commit()

        logger.info(
            "credits_reserved",
            account_id=intent.account_id,
            call_id=intent.call_id,
            reservation_id=str(verified.id),
            amount_minor=intent.amount_minor,
            available_after=available_after,
            reserved_after=reserved_after,
        )

        return ReservationData(
            reservation_id=verified.id,
            account_id=verified.account_id,
            amount_minor=verified.amount_minor,
            status=ReservationStatus.ACTIVE,
            call_id=verified.call_id,
            billing_enabled=True,
            replayed=False,
            available_after=available_after,
            reserved_after=reserved_after,
            created_at=verified.created_at,
        )
