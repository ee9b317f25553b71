"""Canonical customer accounts and their external identities."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from favilla_api.db.base import Base


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityScheme(str, Enum):
    """External identity namespaces that can point at an account."""

    LEGACY = "legacy"
    AUTHPROVIDER = "authprovider"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Account(Base):
    """One customer, however many ways they sign in."""

    __tablename__ = "accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    status = Column(
        SqlEnum(AccountStatus, name="account_status", values_callable=_enum_values),
        nullable=False,
        default=AccountStatus.ACTIVE,
        server_default=AccountStatus.ACTIVE.value,
    )
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=func.now(), nullable=False)

    external_ids = relationship("AccountExternalId", back_populates="account", lazy="selectin")
    balance_cache = relationship("AccountBalance", back_populates="account", uselist=False)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class AccountExternalId(Base):
    """Mapping of (scheme, external id) to exactly one account."""

    __tablename__ = "account_external_ids"
    __table_args__ = (
        UniqueConstraint("scheme", "external_id", name="uq_account_external_ids_scheme_external_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    scheme = Column(
        SqlEnum(IdentityScheme, name="identity_scheme", values_callable=_enum_values),
        nullable=False,
    )
    external_id = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    account = relationship("Account", back_populates="external_ids")


class AccountBalance(Base):
    """Read cache of the ledger sum, recomputed inside every ledger write.

    ``version`` is bumped whenever a writer locks the row, which is how ledger
    writes for one account are serialized.
    """

    __tablename__ = "account_balances"

    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), primary_key=True)
    balance = Column(BigInteger, nullable=False, default=0, server_default="0")
    entry_count = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, default=0, server_default="0")
    rebuilt_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=func.now(), nullable=False)

    account = relationship("Account", back_populates="balance_cache")


__all__ = [
    "Account",
    "AccountBalance",
    "AccountExternalId",
    "AccountStatus",
    "IdentityScheme",
]
