"""Points ledger, reward catalog and voucher models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from favilla_api.db.base import Base
from favilla_api.models.account import _enum_values, _utcnow
from favilla_api.services.loyalty.errors import ImmutableLedgerEntry


class LedgerEntryKind(str, Enum):
    EARN = "earn"
    REDEEM = "redeem"
    REVERSAL = "reversal"
    ADJUSTMENT = "adjustment"


class LedgerEntry(Base):
    """Append-only record of one balance-affecting event."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_ledger_entries_amount_nonzero"),
        Index("ix_ledger_entries_account_created", "account_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    kind = Column(SqlEnum(LedgerEntryKind, name="ledger_entry_kind", values_callable=_enum_values), nullable=False)
    amount = Column(BigInteger, nullable=False)
    source_reference = Column(String(255), nullable=True)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    reverses_entry_id = Column(UUID(as_uuid=True), ForeignKey("ledger_entries.id"), nullable=True, unique=True)
    reason = Column(Text, nullable=True)
    actor = Column(String(255), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    vouchers = relationship("Voucher", back_populates="redemption_entry")


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):  # noqa: ANN001
    raise ImmutableLedgerEntry(f"Ledger entry {target.id} is append-only")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):  # noqa: ANN001
    raise ImmutableLedgerEntry(f"Ledger entry {target.id} cannot be deleted")


class DiscountType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    DELIVERY_FEE = "delivery_fee"


class VoucherStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class LoyaltyReward(Base):
    """Catalog item members can spend points on."""

    __tablename__ = "loyalty_rewards"
    __table_args__ = (
        CheckConstraint("points_required > 0", name="ck_loyalty_rewards_points_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    slug = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    points_required = Column(Integer, nullable=False)
    discount_type = Column(SqlEnum(DiscountType, name="discount_type", values_callable=_enum_values), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    min_order_amount = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    validity_days = Column(Integer, nullable=False, default=30, server_default="30")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=func.now(), nullable=False)


class Voucher(Base):
    """One-time discount code minted by a redemption entry."""

    __tablename__ = "vouchers"
    __table_args__ = (
        Index("ix_vouchers_status_expires_at", "status", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    code = Column(String(32), nullable=False, unique=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id"), nullable=True)
    reward_name = Column(String(255), nullable=True)
    discount_type = Column(SqlEnum(DiscountType, name="discount_type", values_callable=_enum_values), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    min_order_amount = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    status = Column(
        SqlEnum(VoucherStatus, name="voucher_status", values_callable=_enum_values),
        nullable=False,
        default=VoucherStatus.ACTIVE,
        server_default=VoucherStatus.ACTIVE.value,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    redemption_entry_id = Column(UUID(as_uuid=True), ForeignKey("ledger_entries.id"), nullable=False, unique=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    applied_order_id = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=func.now(), nullable=False)

    redemption_entry = relationship("LedgerEntry", back_populates="vouchers")
    reward = relationship("LoyaltyReward")


__all__ = [
    "DiscountType",
    "LedgerEntry",
    "LedgerEntryKind",
    "LoyaltyReward",
    "Voucher",
    "VoucherStatus",
]
