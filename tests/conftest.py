from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from favilla_api.app import create_app
from favilla_api.core.settings import settings
from favilla_api.db.base import Base
from favilla_api.db.session import build_engine, get_session
from favilla_api.models.loyalty import DiscountType, LoyaltyReward
from favilla_api.observability.loyalty import get_loyalty_store
from favilla_api.observability.scheduler import get_scheduler_store

ADMIN_KEY = "admin-test-key"
CHECKOUT_KEY = "checkout-test-key"
WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", ADMIN_KEY)
    monkeypatch.setattr(settings, "checkout_api_key", CHECKOUT_KEY)
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "loyalty_points_per_dollar", 1)
    monkeypatch.setattr(settings, "loyalty_bonus_threshold", None)
    monkeypatch.setattr(settings, "loyalty_job_scheduler_enabled", False)
    get_loyalty_store().reset()
    get_scheduler_store().reset()
    yield
    get_loyalty_store().reset()
    get_scheduler_store().reset()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # A file database so concurrent sessions get their own connections.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def free_pizza_reward(session_factory):
    async with session_factory() as session:
        reward = LoyaltyReward(
            slug="free-pizza",
            name="Free medium pizza",
            points_required=50,
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("15.00"),
            min_order_amount=Decimal("20.00"),
            validity_days=30,
        )
        session.add(reward)
        await session.commit()
    return reward


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-API-Key": ADMIN_KEY, "X-Admin-Actor": "ops@favillas.test"}


@pytest.fixture
def checkout_headers() -> dict[str, str]:
    return {"X-API-Key": CHECKOUT_KEY}
