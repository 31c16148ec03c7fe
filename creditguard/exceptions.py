"""
Exception Classes - Strongly typed exception hierarchy.

Raised inside ledger transactions to force a rollback. The guard managers
convert the expected ones into Err results at their method boundary.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all ledger errors."""

    pass


class InsufficientCreditsError(BillingError):
    """Raised when available credits cannot cover a reservation."""

    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(f"Insufficient credits. Available: {available}, Required: {required}")


class AccountNotFoundError(BillingError):
    """Raised when an account has no billing record."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class ReservationNotFoundError(BillingError):
    """Raised when a reservation is missing, foreign, or no longer active."""

    def __init__(self, reference: UUID | str, reason: str = "not found") -> None:
        self.reference = reference
        self.reason = reason
        super().__init__(f"Reservation {reference}: {reason}")


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class IdempotencyConflictError(BillingError):
    """Raised when an idempotency key is reused."""

    def __init__(self, existing_id: UUID) -> None:
        self.existing_id = existing_id
        super().__init__(f"Idempotency conflict: existing ID {existing_id}")


class AuthenticationError(BillingError):
    """Raised when authentication fails (invalid API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
