"""Operator endpoints for identities, ledger corrections, drift and rewards."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.api.dependencies.security import require_admin_actor, require_admin_api_key
from favilla_api.api.v1.endpoints.loyalty import ledger_window
from favilla_api.db.session import get_session
from favilla_api.schemas.loyalty import (
    AccountResponse,
    AdjustmentRequest,
    BalanceResponse,
    CachedBalanceResponse,
    DriftResponse,
    ExpireSweepResponse,
    IdentityLinkRequest,
    IdentityPayload,
    IdentityResolveResponse,
    LedgerWindowResponse,
    ReconciliationResponse,
    ReversalRequest,
    RewardCreateRequest,
    RewardResponse,
    RewardUpdateRequest,
)
from favilla_api.services.identity import IdentityResolver
from favilla_api.services.loyalty.ledger_service import LedgerService
from favilla_api.services.loyalty.reconciliation import ReconciliationService
from favilla_api.services.loyalty.rewards import RewardCatalog
from favilla_api.services.loyalty.vouchers import VoucherIssuer


router = APIRouter(
    prefix="/admin/loyalty",
    tags=["admin-loyalty"],
    dependencies=[Depends(require_admin_api_key)],
)


async def _account_response(db: AsyncSession, account_id: UUID) -> AccountResponse:
    resolver = IdentityResolver(db)
    account = await resolver.get_account(account_id)
    return AccountResponse.build(
        account,
        balance=await LedgerService(db).get_balance(account_id),
        external_ids=await resolver.list_external_ids(account_id),
    )


@router.post("/identities/resolve", response_model=IdentityResolveResponse)
async def resolve_identity(
    payload: IdentityPayload,
    db: AsyncSession = Depends(get_session),
) -> IdentityResolveResponse:
    account_id = await IdentityResolver(db).resolve(payload.scheme, payload.externalId)
    await db.commit()
    return IdentityResolveResponse(accountId=account_id)


@router.post("/identities/link", response_model=AccountResponse)
async def link_identity(
    payload: IdentityLinkRequest,
    actor: str = Depends(require_admin_actor),
    db: AsyncSession = Depends(get_session),
) -> AccountResponse:
    """Attach an external id to an account; 409 if it belongs to someone else."""

    await IdentityResolver(db).link(payload.accountId, payload.scheme, payload.externalId)
    await db.commit()
    return await _account_response(db, payload.accountId)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(account_id: UUID, db: AsyncSession = Depends(get_session)) -> AccountResponse:
    return await _account_response(db, account_id)


@router.post("/accounts/{account_id}/deactivate", response_model=AccountResponse)
async def deactivate_account(
    account_id: UUID,
    actor: str = Depends(require_admin_actor),
    db: AsyncSession = Depends(get_session),
) -> AccountResponse:
    await IdentityResolver(db).deactivate(account_id, actor=actor)
    await db.commit()
    return await _account_response(db, account_id)


@router.get("/accounts/{account_id}/ledger", response_model=LedgerWindowResponse)
async def list_account_ledger(
    account_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None),
    kinds: list[str] | None = Query(None),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    return await ledger_window(db, account_id, limit=limit, cursor=cursor, kinds=kinds)


@router.post(
    "/accounts/{account_id}/adjustments",
    response_model=BalanceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_adjustment(
    account_id: UUID,
    payload: AdjustmentRequest,
    actor: str = Depends(require_admin_actor),
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    """Record an audited manual correction."""

    result = await LedgerService(db).adjustment(
        account_id,
        payload.amount,
        payload.reason,
        actor,
        idempotency_key=payload.idempotencyKey,
        source_reference=payload.sourceReference,
    )
    await db.commit()
    return BalanceResponse.from_result(result)


@router.post("/accounts/{account_id}/balance/rebuild", response_model=CachedBalanceResponse)
async def rebuild_balance_cache(
    account_id: UUID,
    actor: str = Depends(require_admin_actor),
    db: AsyncSession = Depends(get_session),
) -> CachedBalanceResponse:
    totals = await LedgerService(db).rebuild_cached_balance(account_id)
    await db.commit()
    return CachedBalanceResponse(accountId=account_id, balance=totals.balance, entryCount=totals.entry_count)


@router.post("/entries/{entry_id}/reversal", response_model=BalanceResponse, status_code=status.HTTP_201_CREATED)
async def reverse_entry(
    entry_id: UUID,
    payload: ReversalRequest,
    actor: str = Depends(require_admin_actor),
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    result = await LedgerService(db).reverse(entry_id, payload.reason, actor=actor)
    await db.commit()
    return BalanceResponse.from_result(result)


@router.get("/reconciliation", response_model=ReconciliationResponse)
async def check_reconciliation(
    account_id: UUID | None = Query(None, alias="accountId"),
    include_in_sync: bool = Query(False, alias="includeInSync"),
    db: AsyncSession = Depends(get_session),
) -> ReconciliationResponse:
    """Compare cached balances with the ledger. Never writes."""

    report = await ReconciliationService(db).check(account_id)
    drifting = [item for item in report if not item.in_sync]
    listed = report if include_in_sync else drifting
    return ReconciliationResponse(
        accountsChecked=len(report),
        driftCount=len(drifting),
        drifts=[
            DriftResponse(
                accountId=item.account_id,
                ledgerBalance=item.ledger_balance,
                cachedBalance=item.cached_balance,
                drift=item.drift,
            )
            for item in listed
        ],
    )


@router.post("/vouchers/expire", response_model=ExpireSweepResponse)
async def expire_vouchers(db: AsyncSession = Depends(get_session)) -> ExpireSweepResponse:
    cutoff = datetime.now(timezone.utc)
    expired = await VoucherIssuer(db).expire_sweep(cutoff)
    await db.commit()
    return ExpireSweepResponse(expired=expired, cutoff=cutoff)


@router.get("/rewards", response_model=List[RewardResponse])
async def list_all_rewards(db: AsyncSession = Depends(get_session)) -> List[RewardResponse]:
    rewards = await RewardCatalog(db).list_rewards(include_inactive=True)
    return [RewardResponse.from_reward(reward) for reward in rewards]


@router.post("/rewards", response_model=RewardResponse, status_code=status.HTTP_201_CREATED)
async def create_reward(
    payload: RewardCreateRequest,
    actor: str = Depends(require_admin_actor),
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    reward = await RewardCatalog(db).create(slug=payload.slug, **payload.to_fields())
    await db.commit()
    return RewardResponse.from_reward(reward)


@router.put("/rewards/{slug}", response_model=RewardResponse)
async def update_reward(
    slug: str,
    payload: RewardUpdateRequest,
    actor: str = Depends(require_admin_actor),
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    reward = await RewardCatalog(db).update(slug, **payload.to_changes())
    await db.commit()
    return RewardResponse.from_reward(reward)
