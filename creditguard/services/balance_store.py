"""
Balance Store - Account rows, row locks, and the append-only ledger.

NO DICTIONARIES - All reads return ORM rows or strongly typed snapshots.

Every balance mutation goes through apply_balance(), which writes the new
balances, verifies them, and appends a CreditTransaction carrying the
before/after snapshot.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from creditguard.db.models import CallCostRecord, CreditAccount, CreditTransaction, Reservation
from creditguard.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    WriteVerificationError,
)
from creditguard.models.api import ReservationStatus, TransactionType
from creditguard.models.domain import BalanceSnapshot


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def snapshot_of(account: CreditAccount) -> BalanceSnapshot:
    """Convert ORM account to an immutable balance snapshot."""
    return BalanceSnapshot(
        account_id=account.account_id,
        available_minor=account.available_minor,
        reserved_minor=account.reserved_minor,
        billing_enabled=account.billing_enabled,
        cost_per_minute_minor=account.cost_per_minute_minor,
    )


class BalanceStore:
    """Persistence primitives shared by the guard managers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_balance(self, account_id: str) -> BalanceSnapshot:
        """
        Read the current balance without locking.

        Raises:
            AccountNotFoundError: No billing record for account_id
        """
        account = await self.find_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return snapshot_of(account)

    async def find_account(self, account_id: str) -> CreditAccount | None:
        stmt = (
            select(CreditAccount)
            .where(CreditAccount.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_account(self, account_id: str) -> CreditAccount:
        """
        Lock account row for update (SELECT FOR UPDATE).

        The lock is held until the surrounding transaction commits or rolls
        back. populate_existing refreshes a row already in the identity map
        so the caller always sees the locked values.

        Raises:
            AccountNotFoundError: No billing record for account_id
        """
        stmt = (
            select(CreditAccount)
            .where(CreditAccount.account_id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def find_reservation(self, reservation_id: UUID) -> Reservation | None:
        stmt = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_reservation_by_call_id(self, call_id: str) -> Reservation | None:
        stmt = (
            select(Reservation)
            .where(Reservation.call_id == call_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_cost_record(self, call_id: str) -> CallCostRecord | None:
        stmt = select(CallCostRecord).where(CallCostRecord.call_id == call_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_transaction_by_idempotency(self, idempotency_key: str) -> CreditTransaction | None:
        stmt = select(CreditTransaction).where(
            CreditTransaction.idempotency_key == idempotency_key
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_active_reservations(self, account_id: str) -> int:
        stmt = select(func.count(Reservation.id)).where(
            Reservation.account_id == account_id,
            Reservation.status == ReservationStatus.ACTIVE.value,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def list_stale_reservation_ids(self, cutoff: datetime) -> list[tuple[UUID, str]]:
        """Active reservations created before cutoff, oldest first."""
        stmt = (
            select(Reservation.id, Reservation.account_id)
            .where(
                Reservation.status == ReservationStatus.ACTIVE.value,
                Reservation.created_at < cutoff,
            )
            .order_by(Reservation.created_at)
        )
        result = await self.session.execute(stmt)
        return [(row.id, row.account_id) for row in result]

    async def apply_balance(
        self,
        account: CreditAccount,
        *,
        available_after: int,
        reserved_after: int,
        transaction_type: TransactionType,
        amount_minor: int,
        description: str,
        reservation_id: UUID | None = None,
        call_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        """
        Write new balances on a locked account and append the ledger entry.

        Write pattern:
        1. Execute write
        2. Flush to database
        3. Read back and verify

        Raises:
            DataIntegrityError: Balance would go negative or read-back mismatch
            WriteVerificationError: Rows missing after flush
        """
        if available_after < 0 or reserved_after < 0:
            raise DataIntegrityError(
                f"Negative balance for {account.account_id}: "
                f"available={available_after}, reserved={reserved_after}"
            )

        entry = CreditTransaction(
            account_id=account.account_id,
            transaction_type=transaction_type.value,
            amount_minor=amount_minor,
            available_before=account.available_minor,
            available_after=available_after,
            reserved_before=account.reserved_minor,
            reserved_after=reserved_after,
            reservation_id=reservation_id,
            call_id=call_id,
            description=description,
            idempotency_key=idempotency_key,
        )
        self.session.add(entry)

        account.available_minor = available_after
        account.reserved_minor = reserved_after
        await self.session.flush()

        verified_entry = await self.session.get(CreditTransaction, entry.id)
        if verified_entry is None:
            raise WriteVerificationError(f"Transaction {entry.id} not found after insert")

        verified_account = await self.session.get(CreditAccount, account.account_id)
        if verified_account is None:
            raise WriteVerificationError(f"Account {account.account_id} disappeared after update")

        if (
            verified_account.available_minor != available_after
            or verified_account.reserved_minor != reserved_after
        ):
            raise DataIntegrityError(
                f"Balance mismatch for {account.account_id}: expected "
                f"{available_after}/{reserved_after}, got "
                f"{verified_account.available_minor}/{verified_account.reserved_minor}"
            )

        return verified_entry
