"""Map loyalty domain errors onto HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from favilla_api.services.loyalty.errors import LoyaltyError, TransactionTimeout


async def loyalty_error_handler(request: Request, exc: LoyaltyError) -> JSONResponse:
    body = exc.to_dict()
    if isinstance(exc, TransactionTimeout):
        logger.opt(exception=exc).error(
            "Loyalty transaction timed out",
            path=request.url.path,
            error_code=exc.code,
            cause=exc.message,
        )
        body = {"code": exc.code, "message": exc.public_message, "details": {}}
    else:
        logger.info(
            "Rejected loyalty request",
            path=request.url.path,
            error_code=exc.code,
            details=exc.details,
        )

    headers = {"Retry-After": "1"} if isinstance(exc, TransactionTimeout) else None
    return JSONResponse(status_code=exc.status_code, content={"error": body}, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LoyaltyError, loyalty_error_handler)
