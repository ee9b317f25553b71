"""SQLAlchemy models package."""

from .account import (  # noqa: F401
    Account,
    AccountBalance,
    AccountExternalId,
    AccountStatus,
    IdentityScheme,
)
from .loyalty import (  # noqa: F401
    DiscountType,
    LedgerEntry,
    LedgerEntryKind,
    LoyaltyReward,
    Voucher,
    VoucherStatus,
)
