from fastapi import Depends, Header, HTTPException, status

from favilla_api.core.settings import settings


def _check_key(provided: str, expected: str, *, label: str) -> None:
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} API key not configured",
        )
    if provided != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


async def require_checkout_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    _check_key(x_api_key, settings.checkout_api_key, label="Checkout")


async def require_admin_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    _check_key(x_api_key, settings.admin_api_key, label="Admin")


async def require_admin_actor(
    x_admin_actor: str = Header("", alias="X-Admin-Actor"),
    _: None = Depends(require_admin_api_key),
) -> str:
    """Operator identity recorded on every admin ledger write."""

    actor = x_admin_actor.strip()
    if not actor:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Admin-Actor header is required",
        )
    return actor
