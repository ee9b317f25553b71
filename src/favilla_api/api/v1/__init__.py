from fastapi import APIRouter

from .endpoints import (
    admin_loyalty,
    checkout,
    health,
    loyalty,
    observability,
    payments,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(loyalty.router)
router.include_router(checkout.router)
router.include_router(payments.router)
router.include_router(admin_loyalty.router)
router.include_router(observability.router)
