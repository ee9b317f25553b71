from fastapi import APIRouter

from favilla_api.observability.loyalty import get_loyalty_store
from favilla_api.observability.scheduler import get_scheduler_store

router = APIRouter(prefix="/observability", tags=["observability"])


@router.get("/loyalty")
async def loyalty_snapshot() -> dict[str, object]:
    return get_loyalty_store().snapshot().as_dict()


@router.get("/scheduler")
async def scheduler_snapshot() -> dict[str, object]:
    return get_scheduler_store().snapshot().as_dict()
