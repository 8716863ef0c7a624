import os

os.environ["TEST"] = "true"
os.environ["SCHEDULER_ENABLED"] = "false"

from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from dispatch_hub.auth.auth import get_current_user
from dispatch_hub.config.config import settings
from dispatch_hub.database.database import Base, get_db
from dispatch_hub.main import app
from dispatch_hub.models.models import Order, OrderActivity, OrderItem, ProductVariant, User
from dispatch_hub.schemas.status_schema import FulfillmentType, OrderStatus, PaymentMethod
from dispatch_hub.services import courier_sync_service
from dispatch_hub.services.courier_provider import reset_providers
from dispatch_hub.test.factories import (
    AdminFactory,
    ManagerFactory,
    OperatorFactory,
    OrderFactory,
    RiderFactory,
    VariantFactory,
    ViewerFactory,
)


@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    A fresh in-memory database per test. StaticPool keeps the single
    connection alive so every session sees the same schema.
    """
    test_engine = create_async_engine(
        url=settings.TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async_session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_factory() as test_session:
        yield test_session


@pytest.fixture(autouse=True)
def isolated_couriers(monkeypatch):
    """No real provider clients, locks or Redis leak between tests."""
    reset_providers()
    courier_sync_service._booking_locks.clear()
    cache = MagicMock()
    cache.get.return_value = None
    monkeypatch.setattr(courier_sync_service, "redis_client", cache)
    monkeypatch.setattr(settings, "BOOKING_RETRY_DELAY", 0)
    yield cache
    reset_providers()


@pytest_asyncio.fixture(scope="function")
async def client(session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test client that uses the test database session.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=settings.TEST_BASE_URL) as ac:
        yield ac
    app.dependency_overrides.clear()


async def persist(session: AsyncSession, *objects):
    session.add_all(objects)
    await session.commit()
    for obj in objects:
        await session.refresh(obj)
    return objects[0] if len(objects) == 1 else objects


@pytest_asyncio.fixture
async def admin(session: AsyncSession) -> User:
    return await persist(session, AdminFactory())


@pytest_asyncio.fixture
async def manager(session: AsyncSession) -> User:
    return await persist(session, ManagerFactory())


@pytest_asyncio.fixture
async def operator(session: AsyncSession) -> User:
    return await persist(session, OperatorFactory())


@pytest_asyncio.fixture
async def rider(session: AsyncSession) -> User:
    return await persist(session, RiderFactory())


@pytest_asyncio.fixture
async def other_rider(session: AsyncSession) -> User:
    return await persist(session, RiderFactory())


@pytest_asyncio.fixture
async def viewer(session: AsyncSession) -> User:
    return await persist(session, ViewerFactory())


@pytest_asyncio.fixture
async def variant(session: AsyncSession) -> ProductVariant:
    return await persist(session, VariantFactory(stock=10))


@pytest_asyncio.fixture
async def make_order(session: AsyncSession, variant: ProductVariant):
    """
    Build an order directly in a given status, skipping the path there.
    """

    async def _make(
        status: OrderStatus = OrderStatus.CONFIRMED,
        fulfillment_type: FulfillmentType = FulfillmentType.INSIDE_VALLEY,
        quantity: int = 1,
        unit_price: Decimal = Decimal("500.00"),
        **fields,
    ) -> Order:
        total = unit_price * quantity
        if fulfillment_type == FulfillmentType.OUTSIDE_VALLEY:
            fields.setdefault("destination_branch", "POKHARA")
        if fields.get("payment_method") == PaymentMethod.PREPAID:
            fields.setdefault("cod_due", Decimal("0.00"))
            fields.setdefault("paid_amount", total)
        order = OrderFactory(
            status=status,
            fulfillment_type=fulfillment_type,
            subtotal=total,
            cod_due=fields.pop("cod_due", total),
            items=[
                OrderItem(
                    variant_id=variant.id,
                    product_name=variant.name,
                    quantity=quantity,
                    unit_price=unit_price,
                )
            ],
            **fields,
        )
        return await persist(session, order)

    return _make


def as_user(user: User):
    """
    Authenticate every request of the shared test client as `user`.

    A failed request rolls the shared session back and expires `user`, so each
    request loads it again by primary key.
    """
    (user_id,) = inspect(user).identity

    async def override_get_current_user(db: AsyncSession = Depends(get_db)) -> User:
        return await db.get(User, user_id, populate_existing=True)

    app.dependency_overrides[get_current_user] = override_get_current_user


@pytest_asyncio.fixture
async def admin_client(client: AsyncClient, admin: User) -> AsyncClient:
    as_user(admin)
    return client


@pytest_asyncio.fixture
async def operator_client(client: AsyncClient, operator: User) -> AsyncClient:
    as_user(operator)
    return client


@pytest_asyncio.fixture
async def rider_client(client: AsyncClient, rider: User) -> AsyncClient:
    as_user(rider)
    return client


@pytest_asyncio.fixture
async def viewer_client(client: AsyncClient, viewer: User) -> AsyncClient:
    as_user(viewer)
    return client


@pytest.fixture
def login_as():
    """Switch the identity of the shared client mid-test."""
    return as_user


@pytest.fixture
def activities_of(session: AsyncSession):
    async def _activities(order_id, kind=None):
        stmt = select(OrderActivity).where(OrderActivity.order_id == order_id)
        if kind is not None:
            stmt = stmt.where(OrderActivity.kind == kind)
        result = await session.execute(stmt.order_by(OrderActivity.created_at, OrderActivity.id))
        return list(result.scalars().all())

    return _activities
