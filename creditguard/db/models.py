"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class CreditAccount(Base):
    """
    ORM model for credit_accounts table.

    One row per billed account. This row is the lock target for every
    balance mutation.
    """

    __tablename__ = "credit_accounts"

    account_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Balances (minor units)
    available_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    reserved_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Billing switch - unmetered accounts bypass the guard
    billing_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Pricing
    cost_per_minute_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=15)

    # Alerts and auto-recharge
    low_balance_threshold_minor: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=1000
    )
    last_low_balance_alert_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    auto_recharge_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_recharge_trigger_minor: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=500
    )
    auto_recharge_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("available_minor >= 0", name="ck_available_non_negative"),
        CheckConstraint("reserved_minor >= 0", name="ck_reserved_non_negative"),
        CheckConstraint("cost_per_minute_minor >= 0", name="ck_rate_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditAccount(account_id={self.account_id}, available={self.available_minor}, "
            f"reserved={self.reserved_minor}, billing_enabled={self.billing_enabled})>"
        )


class Reservation(Base):
    """
    ORM model for credit_reservations table.

    Provisional hold for one call attempt. Terminal states never change.
    """

    __tablename__ = "credit_reservations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("credit_accounts.account_id", ondelete="RESTRICT"),
        nullable=False,
    )
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    call_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_reservation_amount_positive"),
        CheckConstraint(
            "status IN ('active', 'finalized', 'released')", name="ck_reservation_status"
        ),
        UniqueConstraint("call_id", name="uq_reservation_call_id"),
        Index("idx_reservations_account_status", "account_id", "status"),
        Index("idx_reservations_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Reservation(id={self.id}, account_id={self.account_id}, "
            f"amount={self.amount_minor}, status={self.status})>"
        )


class CallCostRecord(Base):
    """
    ORM model for call_cost_records table.

    Written exactly once per call; call_id is the finalization idempotency key.
    """

    __tablename__ = "call_cost_records"

    call_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    reservation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("credit_reservations.id", ondelete="RESTRICT"),
        nullable=False,
    )
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)

    reserved_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    actual_cost_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deducted_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refunded_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shortfall_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Populated by duration-based finalization
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider_cost_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    margin_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    finalized_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("actual_cost_minor >= 0", name="ck_cost_non_negative"),
        CheckConstraint("deducted_minor >= 0", name="ck_deducted_non_negative"),
        CheckConstraint(
            "deducted_minor + shortfall_minor = actual_cost_minor",
            name="ck_cost_settlement_consistency",
        ),
        UniqueConstraint("reservation_id", name="uq_cost_record_reservation"),
        Index("idx_cost_records_account", "account_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CallCostRecord(call_id={self.call_id}, reservation_id={self.reservation_id}, "
            f"actual_cost={self.actual_cost_minor})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only ledger of every balance mutation, with before/after snapshots.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("credit_accounts.account_id", ondelete="RESTRICT"),
        nullable=False,
    )
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Balance snapshots (denormalized for auditing)
    available_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    available_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reserved_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reserved_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    reservation_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    call_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_transaction_amount_non_negative"),
        CheckConstraint(
            "transaction_type IN ('deposit', 'reservation', 'release', 'deduction', 'adjustment')",
            name="ck_transaction_type",
        ),
        UniqueConstraint("idempotency_key", name="uq_transaction_idempotency"),
        Index("idx_transactions_account_created", "account_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, account_id={self.account_id}, "
            f"type={self.transaction_type}, amount={self.amount_minor})>"
        )
