"""Map external identities (legacy ids, auth provider ids) onto canonical accounts."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.db.session import atomic
from favilla_api.models.account import (
    Account,
    AccountBalance,
    AccountExternalId,
    AccountStatus,
    IdentityScheme,
)
from favilla_api.services.loyalty.errors import ConflictError, InvalidRequest, NotFound


def _canonical_legacy_id(value: str) -> str:
    # "29" and "029" are the same legacy user.
    if not (value.isascii() and value.isdigit()):
        raise InvalidRequest("Legacy ids are positive integers", external_id=value)
    canonical = str(int(value))
    if canonical == "0":
        raise InvalidRequest("Legacy ids are positive integers", external_id=value)
    return canonical


def normalize_identity(scheme: IdentityScheme | str, external_id: object) -> tuple[IdentityScheme, str]:
    """Validate a (scheme, external id) pair as supplied by a caller."""

    try:
        resolved_scheme = IdentityScheme(scheme)
    except ValueError as exc:
        raise InvalidRequest(f"Unknown identity scheme: {scheme}", scheme=str(scheme)) from exc

    if external_id is None:
        raise InvalidRequest("External id is required")
    normalized = str(external_id).strip()
    if not normalized:
        raise InvalidRequest("External id is required")
    if resolved_scheme == IdentityScheme.LEGACY:
        normalized = _canonical_legacy_id(normalized)
    return resolved_scheme, normalized


class IdentityResolver:
    """Resolve, link and deactivate canonical accounts.

    Account ids are generated once and never computed from another id.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def lookup(self, scheme: IdentityScheme | str, external_id: object) -> UUID | None:
        resolved_scheme, normalized = normalize_identity(scheme, external_id)
        return await self._find_account_id(resolved_scheme, normalized)

    async def resolve(self, scheme: IdentityScheme | str, external_id: object) -> UUID:
        """Return the account for an external id, creating one on first sight."""

        resolved_scheme, normalized = normalize_identity(scheme, external_id)
        existing = await self._find_account_id(resolved_scheme, normalized)
        if existing is not None:
            return existing

        async with atomic(self._db):
            account = Account(status=AccountStatus.ACTIVE, deactivated_at=None)
            try:
                async with self._db.begin_nested():
                    self._db.add(account)
                    await self._db.flush()
                    self._db.add(AccountBalance(account_id=account.id))
                    self._db.add(
                        AccountExternalId(
                            account_id=account.id,
                            scheme=resolved_scheme,
                            external_id=normalized,
                        )
                    )
                    await self._db.flush()
            except IntegrityError:
                winner = await self._find_account_id(resolved_scheme, normalized)
                if winner is None:
                    raise
                logger.warning(
                    "Detected race when creating account",
                    scheme=resolved_scheme.value,
                    external_id=normalized,
                )
                return winner

        logger.info(
            "Created account",
            account_id=str(account.id),
            scheme=resolved_scheme.value,
            external_id=normalized,
        )
        return account.id

    async def link(self, account_id: UUID, scheme: IdentityScheme | str, external_id: object) -> None:
        """Attach an external id to an existing account; never moves it from another one."""

        resolved_scheme, normalized = normalize_identity(scheme, external_id)
        async with atomic(self._db):
            await self.get_account(account_id)
            owner = await self._find_account_id(resolved_scheme, normalized)
            if owner == account_id:
                return
            if owner is not None:
                raise ConflictError(
                    "External id is already linked to another account",
                    scheme=resolved_scheme.value,
                    external_id=normalized,
                )

            try:
                async with self._db.begin_nested():
                    self._db.add(
                        AccountExternalId(
                            account_id=account_id,
                            scheme=resolved_scheme,
                            external_id=normalized,
                        )
                    )
                    await self._db.flush()
            except IntegrityError:
                owner = await self._find_account_id(resolved_scheme, normalized)
                if owner is None:
                    raise
                if owner != account_id:
                    raise ConflictError(
                        "External id is already linked to another account",
                        scheme=resolved_scheme.value,
                        external_id=normalized,
                    ) from None
                return

        logger.info(
            "Linked external id",
            account_id=str(account_id),
            scheme=resolved_scheme.value,
            external_id=normalized,
        )

    async def get_account(self, account_id: UUID) -> Account:
        account = await self._db.get(Account, account_id)
        if account is None:
            raise NotFound(f"Account {account_id} not found", account_id=str(account_id))
        return account

    async def deactivate(self, account_id: UUID, *, actor: str | None = None) -> Account:
        """Deactivate an account; it keeps resolving but stops earning and redeeming."""

        async with atomic(self._db):
            account = await self.get_account(account_id)
            if account.status != AccountStatus.INACTIVE:
                account.status = AccountStatus.INACTIVE
                account.deactivated_at = datetime.now(timezone.utc)
                await self._db.flush()
                logger.info("Deactivated account", account_id=str(account_id), actor=actor)
        await self._db.refresh(account)
        return account

    async def list_external_ids(self, account_id: UUID) -> list[AccountExternalId]:
        stmt = (
            select(AccountExternalId)
            .where(AccountExternalId.account_id == account_id)
            .order_by(AccountExternalId.created_at, AccountExternalId.scheme)
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def _find_account_id(self, scheme: IdentityScheme, external_id: str) -> UUID | None:
        stmt = select(AccountExternalId.account_id).where(
            AccountExternalId.scheme == scheme,
            AccountExternalId.external_id == external_id,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()
