"""Identity-aware dependencies for storefront member APIs."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.db.session import get_session
from favilla_api.services.identity import IdentityResolver


async def require_member_account(
    identity_scheme: str | None = Header(None, alias="X-Identity-Scheme"),
    identity_subject: str | None = Header(None, alias="X-Identity-Subject"),
    db: AsyncSession = Depends(get_session),
) -> UUID:
    """Resolve the canonical account for the identity the auth gateway verified.

    Tokens are verified upstream; this only maps the forwarded pair.
    """

    if not identity_scheme or not identity_subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing member identity context",
        )

    account_id = await IdentityResolver(db).resolve(identity_scheme, identity_subject)
    await db.commit()
    return account_id
