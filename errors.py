from typing import Any, Optional


class LedgerError(ValueError):
    reason = "ledger_error"

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        if reason:
            self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "message": str(self)}


class ValidationError(LedgerError):
    reason = "validation_error"


class NotFoundError(LedgerError):
    reason = "not_found"


class InsufficientBalanceError(LedgerError):
    reason = "insufficient_balance"

    def __init__(self, requested_cents: int, available_cents: int) -> None:
        self.requested_cents = requested_cents
        self.available_cents = available_cents
        self.shortfall_cents = requested_cents - available_cents
        super().__init__(
            f"Contribution of {requested_cents} exceeds available balance "
            f"{available_cents} (shortfall {self.shortfall_cents})"
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            requested_cents=self.requested_cents,
            available_cents=self.available_cents,
            shortfall_cents=self.shortfall_cents,
        )
        return data


class TransactionFailure(LedgerError):
    reason = "transaction_failed"


class SynchronizationError(LedgerError):
    """Entry synchronization failed while strict sync is enabled."""

    reason = "synchronization_failed"


class SynchronizationWarning(UserWarning):
    """Entry synchronization failed after the source edit was kept."""
