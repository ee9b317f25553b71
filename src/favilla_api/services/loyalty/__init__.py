"""Loyalty ledger services."""

from .errors import (  # noqa: F401
    AccountInactive,
    AlreadyReversed,
    AlreadyUsed,
    ConflictError,
    DuplicateIdempotencyKey,
    Expired,
    ImmutableLedgerEntry,
    InsufficientBalance,
    InvalidRequest,
    LoyaltyError,
    MinOrderNotMet,
    NotFound,
    TransactionTimeout,
)
