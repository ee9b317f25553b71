"""Member-facing loyalty endpoints: balance, history, vouchers and redemptions."""

from __future__ import annotations

from typing import List
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.api.dependencies.session import require_member_account
from favilla_api.db.session import get_session
from favilla_api.models.loyalty import LedgerEntryKind, VoucherStatus
from favilla_api.schemas.loyalty import (
    AccountResponse,
    LedgerEntryResponse,
    LedgerWindowResponse,
    RedemptionRequest,
    RedemptionResponse,
    BalanceResponse,
    RewardResponse,
    VoucherResponse,
)
from favilla_api.services.identity import IdentityResolver
from favilla_api.services.loyalty.errors import InvalidRequest
from favilla_api.services.loyalty.ledger_service import LedgerService
from favilla_api.services.loyalty.ledger_store import decode_time_uuid_cursor, encode_time_uuid_cursor
from favilla_api.services.loyalty.redemptions import RewardRedemptionService
from favilla_api.services.loyalty.rewards import RewardCatalog
from favilla_api.services.loyalty.vouchers import VoucherIssuer


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


def parse_entry_kinds(values: list[str] | None) -> list[LedgerEntryKind] | None:
    if not values:
        return None
    kinds: list[LedgerEntryKind] = []
    for value in values:
        try:
            kinds.append(LedgerEntryKind(value))
        except ValueError as exc:
            raise InvalidRequest(f"Unsupported ledger entry kind: {value}") from exc
    return kinds


async def ledger_window(
    db: AsyncSession,
    account_id: UUID,
    *,
    limit: int,
    cursor: str | None,
    kinds: list[str] | None,
) -> LedgerWindowResponse:
    entries, next_cursor = await LedgerService(db).history(
        account_id,
        kinds=parse_entry_kinds(kinds),
        limit=limit,
        cursor=decode_time_uuid_cursor(cursor) if cursor else None,
    )
    return LedgerWindowResponse(
        entries=[LedgerEntryResponse.from_entry(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/me", response_model=AccountResponse)
async def get_member_account(
    account_id: UUID = Depends(require_member_account),
    db: AsyncSession = Depends(get_session),
) -> AccountResponse:
    """Return the member's account with its ledger-derived balance."""

    resolver = IdentityResolver(db)
    account = await resolver.get_account(account_id)
    balance = await LedgerService(db).get_balance(account_id)
    return AccountResponse.build(
        account,
        balance=balance,
        external_ids=await resolver.list_external_ids(account_id),
    )


@router.get("/me/ledger", response_model=LedgerWindowResponse)
async def list_member_ledger(
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    kinds: list[str] | None = Query(None, description="Filter ledger entry kinds"),
    account_id: UUID = Depends(require_member_account),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    return await ledger_window(db, account_id, limit=limit, cursor=cursor, kinds=kinds)


@router.get("/me/vouchers", response_model=List[VoucherResponse])
async def list_member_vouchers(
    include_inactive: bool = Query(False, alias="includeInactive"),
    account_id: UUID = Depends(require_member_account),
    db: AsyncSession = Depends(get_session),
) -> List[VoucherResponse]:
    statuses = None if include_inactive else [VoucherStatus.ACTIVE]
    vouchers = await VoucherIssuer(db).list_for_account(account_id, statuses=statuses)
    return [VoucherResponse.from_voucher(voucher) for voucher in vouchers]


@router.post("/me/redemptions", response_model=RedemptionResponse, status_code=status.HTTP_201_CREATED)
async def redeem_reward(
    request: RedemptionRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    account_id: UUID = Depends(require_member_account),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    """Spend points on a reward and return the voucher it produced.

    Retrying with the same idempotency key returns the original voucher.
    """

    key = idempotency_key or request.idempotencyKey or f"redeem:{request.rewardSlug}:{uuid4()}"
    outcome = await RewardRedemptionService(db).redeem_reward(account_id, request.rewardSlug, key)
    await db.commit()
    return RedemptionResponse(
        balance=BalanceResponse.from_result(outcome.ledger),
        voucher=VoucherResponse.from_voucher(outcome.voucher),
    )


@router.get("/rewards", response_model=List[RewardResponse])
async def list_rewards(db: AsyncSession = Depends(get_session)) -> List[RewardResponse]:
    """List active rewards."""

    rewards = await RewardCatalog(db).list_rewards()
    return [RewardResponse.from_reward(reward) for reward in rewards]
