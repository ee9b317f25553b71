"""Typed failures raised by the loyalty ledger, vouchers and identity mapping."""

from __future__ import annotations

from typing import Any


class LoyaltyError(Exception):
    """Base class; ``code`` and ``status_code`` drive the HTTP error body."""

    code = "loyalty_error"
    status_code = 400

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message()
        self.details = details
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidRequest(LoyaltyError, ValueError):
    code = "invalid_request"
    status_code = 400


class NotFound(LoyaltyError):
    code = "not_found"
    status_code = 404


class InsufficientBalance(LoyaltyError):
    code = "insufficient_balance"
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "Not enough points for this redemption"


class AlreadyReversed(LoyaltyError):
    code = "already_reversed"
    status_code = 409


class AlreadyUsed(LoyaltyError):
    code = "already_used"
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "Voucher has already been used"


class Expired(LoyaltyError):
    code = "expired"
    status_code = 410

    @classmethod
    def default_message(cls) -> str:
        return "Voucher has expired"


class MinOrderNotMet(LoyaltyError):
    code = "min_order_not_met"
    status_code = 422


class ConflictError(LoyaltyError):
    code = "conflict"
    status_code = 409


class AccountInactive(LoyaltyError):
    code = "account_inactive"
    status_code = 409


class TransactionTimeout(LoyaltyError):
    """Retryable; the transaction was rolled back and idempotency keys make a retry safe."""

    code = "transaction_timeout"
    status_code = 503
    public_message = "The loyalty service is busy, please try again"


class DuplicateIdempotencyKey(LoyaltyError):
    """Raised by the ledger store only; services turn it into an idempotent result."""

    code = "duplicate_idempotency_key"
    status_code = 409

    def __init__(self, existing: Any) -> None:
        self.existing = existing
        super().__init__(
            f"Idempotency key already recorded: {existing.idempotency_key}",
            entry_id=str(existing.id),
        )


class ImmutableLedgerEntry(RuntimeError):
    """Raised when application code tries to update or delete a ledger row."""
