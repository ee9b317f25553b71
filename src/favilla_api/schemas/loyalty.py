from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from favilla_api.models.account import Account, AccountExternalId
from favilla_api.models.loyalty import DiscountType, LedgerEntry, LoyaltyReward, Voucher
from favilla_api.services.loyalty.ledger_service import LedgerResult
from favilla_api.services.loyalty.vouchers import DiscountApplication, OrderContext

# meta: schema: loyalty-ledger


class LedgerEntryResponse(BaseModel):
    id: UUID
    accountId: UUID
    kind: str
    amount: int
    sourceReference: Optional[str]
    idempotencyKey: str
    reversesEntryId: Optional[UUID]
    reason: Optional[str]
    actor: Optional[str]
    metadata: dict[str, Any]
    createdAt: datetime

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "LedgerEntryResponse":
        return cls(
            id=entry.id,
            accountId=entry.account_id,
            kind=entry.kind.value,
            amount=int(entry.amount),
            sourceReference=entry.source_reference,
            idempotencyKey=entry.idempotency_key,
            reversesEntryId=entry.reverses_entry_id,
            reason=entry.reason,
            actor=entry.actor,
            metadata=dict(entry.metadata_json or {}),
            createdAt=entry.created_at,
        )


class LedgerWindowResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    nextCursor: Optional[str]


class BalanceResponse(BaseModel):
    accountId: UUID
    balance: int
    entryId: Optional[UUID] = None
    replayed: bool = False

    @classmethod
    def from_result(cls, result: LedgerResult) -> "BalanceResponse":
        return cls(
            accountId=result.account_id,
            balance=result.balance,
            entryId=result.entry_id,
            replayed=result.replayed,
        )


class ExternalIdResponse(BaseModel):
    scheme: str
    externalId: str
    linkedAt: datetime

    @classmethod
    def from_model(cls, external_id: AccountExternalId) -> "ExternalIdResponse":
        return cls(
            scheme=external_id.scheme.value,
            externalId=external_id.external_id,
            linkedAt=external_id.created_at,
        )


class AccountResponse(BaseModel):
    id: UUID
    status: str
    balance: int
    externalIds: List[ExternalIdResponse]
    createdAt: datetime
    deactivatedAt: Optional[datetime]

    @classmethod
    def build(cls, account: Account, *, balance: int, external_ids: List[AccountExternalId]) -> "AccountResponse":
        return cls(
            id=account.id,
            status=account.status.value,
            balance=balance,
            externalIds=[ExternalIdResponse.from_model(item) for item in external_ids],
            createdAt=account.created_at,
            deactivatedAt=account.deactivated_at,
        )


class VoucherResponse(BaseModel):
    id: UUID
    code: str
    status: str
    rewardName: Optional[str]
    discountType: str
    discountValue: float
    minOrderAmount: float
    expiresAt: datetime
    usedAt: Optional[datetime]
    appliedOrderId: Optional[str]
    redemptionEntryId: UUID

    @classmethod
    def from_voucher(cls, voucher: Voucher) -> "VoucherResponse":
        return cls(
            id=voucher.id,
            code=voucher.code,
            status=voucher.status.value,
            rewardName=voucher.reward_name,
            discountType=voucher.discount_type.value,
            discountValue=float(voucher.discount_value),
            minOrderAmount=float(voucher.min_order_amount or 0),
            expiresAt=voucher.expires_at,
            usedAt=voucher.used_at,
            appliedOrderId=voucher.applied_order_id,
            redemptionEntryId=voucher.redemption_entry_id,
        )


class RewardResponse(BaseModel):
    id: UUID
    slug: str
    name: str
    description: Optional[str]
    pointsRequired: int
    discountType: str
    discountValue: float
    minOrderAmount: float
    validityDays: int
    isActive: bool

    @classmethod
    def from_reward(cls, reward: LoyaltyReward) -> "RewardResponse":
        return cls(
            id=reward.id,
            slug=reward.slug,
            name=reward.name,
            description=reward.description,
            pointsRequired=int(reward.points_required),
            discountType=reward.discount_type.value,
            discountValue=float(reward.discount_value),
            minOrderAmount=float(reward.min_order_amount or 0),
            validityDays=int(reward.validity_days),
            isActive=bool(reward.is_active),
        )


class RewardCreateRequest(BaseModel):
    slug: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    pointsRequired: int = Field(..., gt=0)
    discountType: DiscountType
    discountValue: Decimal = Field(..., gt=0)
    minOrderAmount: Decimal = Field(Decimal("0"), ge=0)
    validityDays: int = Field(30, gt=0)
    isActive: bool = True

    def to_fields(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "points_required": self.pointsRequired,
            "discount_type": self.discountType,
            "discount_value": self.discountValue,
            "min_order_amount": self.minOrderAmount,
            "validity_days": self.validityDays,
            "is_active": self.isActive,
        }


class RewardUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    pointsRequired: Optional[int] = Field(None, gt=0)
    discountType: Optional[DiscountType] = None
    discountValue: Optional[Decimal] = Field(None, gt=0)
    minOrderAmount: Optional[Decimal] = Field(None, ge=0)
    validityDays: Optional[int] = Field(None, gt=0)
    isActive: Optional[bool] = None

    def to_changes(self) -> dict[str, Any]:
        mapping = {
            "name": "name",
            "description": "description",
            "pointsRequired": "points_required",
            "discountType": "discount_type",
            "discountValue": "discount_value",
            "minOrderAmount": "min_order_amount",
            "validityDays": "validity_days",
            "isActive": "is_active",
        }
        provided = self.model_dump(exclude_unset=True)
        return {mapping[key]: value for key, value in provided.items()}


class RedemptionRequest(BaseModel):
    rewardSlug: str = Field(..., min_length=1)
    idempotencyKey: Optional[str] = Field(None, max_length=200, description="Client retry token")


class RedemptionResponse(BaseModel):
    balance: BalanceResponse
    voucher: VoucherResponse


class OrderContextPayload(BaseModel):
    orderId: str = Field(..., min_length=1)
    subtotal: Decimal = Field(..., ge=0)
    deliveryFee: Decimal = Field(Decimal("0"), ge=0)

    def to_context(self) -> OrderContext:
        return OrderContext(order_id=self.orderId, subtotal=self.subtotal, delivery_fee=self.deliveryFee)


class VoucherCheckoutRequest(BaseModel):
    code: str = Field(..., min_length=1)
    accountId: UUID
    order: OrderContextPayload


class DiscountResponse(BaseModel):
    voucherId: UUID
    code: str
    orderId: str
    discountType: str
    discountAmount: float
    appliedAt: Optional[datetime]
    consumed: bool

    @classmethod
    def from_application(cls, application: DiscountApplication) -> "DiscountResponse":
        return cls(
            voucherId=application.voucher_id,
            code=application.code,
            orderId=application.order_id,
            discountType=application.discount_type.value,
            discountAmount=float(application.discount_amount),
            appliedAt=application.applied_at,
            consumed=application.applied_at is not None,
        )


class IdentityPayload(BaseModel):
    scheme: Literal["legacy", "authprovider"]
    externalId: str = Field(..., min_length=1)


class IdentityLinkRequest(IdentityPayload):
    accountId: UUID


class IdentityResolveResponse(BaseModel):
    accountId: UUID


class AdjustmentRequest(BaseModel):
    amount: int = Field(..., description="Signed points; negative debits")
    reason: str = Field(..., min_length=1)
    idempotencyKey: Optional[str] = Field(None, max_length=200)
    sourceReference: Optional[str] = None


class ReversalRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class CachedBalanceResponse(BaseModel):
    accountId: UUID
    balance: int
    entryCount: int


class DriftResponse(BaseModel):
    accountId: UUID
    ledgerBalance: int
    cachedBalance: int
    drift: int


class ReconciliationResponse(BaseModel):
    accountsChecked: int
    driftCount: int
    drifts: List[DriftResponse]


class ExpireSweepResponse(BaseModel):
    expired: int
    cutoff: datetime
