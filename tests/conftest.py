"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file database. Transactions are opened with
``BEGIN IMMEDIATE`` so concurrent writers queue on the database lock the
way row locks queue them on PostgreSQL.
"""

import os

# Must be set before food_ordering reads its settings
os.environ["ENV_MODE"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["RECEIPT_DELIVERY"] = "inline"
os.environ["PAYSTACK_WEBHOOK_SECRET"] = "test-webhook-secret"

from decimal import Decimal  # noqa: E402
from typing import Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import event, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from food_ordering.database import Base, transaction  # noqa: E402
from food_ordering.models import (  # noqa: E402
    Coupon,
    DiscountType,
    FoodItem,
    Order,
    OrderStatus,
    User,
    UserAddress,
)
from food_ordering.services.notifications import reset_notification_service  # noqa: E402
from food_ordering.services.payment import MockPaymentGateway, reset_payment_gateway  # noqa: E402
from food_ordering.services.receipts import reset_receipt_dispatcher  # noqa: E402
from food_ordering.services.throttle import MemoryCounterStore, reset_counter_store  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"


class RecordingDispatcher:
    """Receipt dispatcher that only remembers what it was asked to send."""

    def __init__(self):
        self.sent: list[tuple[str, Optional[str], str]] = []

    async def dispatch(self, order_id: str, reference: Optional[str], status: str) -> None:
        self.sent.append((order_id, reference, status))


def _serialize_sqlite_transactions(engine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    _serialize_sqlite_transactions(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fetch(session_factory):
    """Read a row back through a fresh session."""
    async def _fetch(model, ident):
        async with session_factory() as fresh:
            return await fresh.get(model, ident)
    return _fetch


@pytest.fixture
def fetch_all(session_factory):
    async def _fetch_all(query):
        async with session_factory() as fresh:
            return list((await fresh.execute(query)).scalars().all())
    return _fetch_all


# =============================================================================
# SEED DATA
# =============================================================================

@pytest.fixture
def make_user(session_factory):
    async def _make_user(email: Optional[str] = "ada@example.com", with_address: bool = False) -> User:
        async with session_factory() as s:
            async with transaction(s):
                user = User(email=email, full_name="Ada Obi")
                s.add(user)
                await s.flush()
                if with_address:
                    s.add(UserAddress(
                        user_id=user.id,
                        label="Home",
                        recipient_name="Ada Obi",
                        phone="+2348000000000",
                        address_line1="12 Admiralty Way",
                        city="Lekki",
                        state="Lagos",
                        country="Nigeria",
                        is_default=True,
                    ))
        return user
    return _make_user


@pytest.fixture
async def user(make_user):
    return await make_user(with_address=True)


@pytest.fixture
async def menu(session_factory):
    """Two available dishes and one sold-out dish."""
    async with session_factory() as s:
        async with transaction(s):
            items = {
                "jollof": FoodItem(name="Jollof Rice", price=Decimal("2500.00")),
                "suya": FoodItem(name="Suya Platter", price=Decimal("1500.00")),
                "pepper_soup": FoodItem(name="Pepper Soup", price=Decimal("3000.00"), available=False),
            }
            s.add_all(items.values())
    return items


@pytest.fixture
def make_coupon(session_factory):
    async def _make_coupon(
        code: str = "WELCOME20",
        discount_type: DiscountType = DiscountType.PERCENTAGE,
        discount_value: str = "20.00",
        max_redemptions: Optional[int] = None,
        **kwargs,
    ) -> Coupon:
        async with session_factory() as s:
            async with transaction(s):
                coupon = Coupon(
                    code=code,
                    discount_type=discount_type,
                    discount_value=Decimal(discount_value),
                    max_redemptions=max_redemptions,
                    redemptions_count=kwargs.pop("redemptions_count", 0),
                    is_active=kwargs.pop("is_active", True),
                    **kwargs,
                )
                s.add(coupon)
        return coupon
    return _make_coupon


@pytest.fixture
def make_order(session_factory):
    """A pending order of two jollof and one suya (total 6500.00)."""
    from food_ordering.services.orders import OrderLine, create_order

    async def _make_order(user: User, menu: dict, status: OrderStatus = OrderStatus.PENDING) -> Order:
        async with session_factory() as s:
            order = await create_order(s, user.id, [
                OrderLine(food_id=menu["jollof"].id, quantity=2),
                OrderLine(food_id=menu["suya"].id, quantity=1),
            ])
            if status != OrderStatus.PENDING:
                async with transaction(s):
                    locked = (await s.execute(select(Order).where(Order.id == order.id))).scalar_one()
                    locked.status = status
                order.status = status
        return order
    return _make_order


# =============================================================================
# SERVICES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_service_factories():
    """Cached service singletons never leak between tests."""
    yield
    reset_payment_gateway()
    reset_notification_service()
    reset_counter_store()
    reset_receipt_dispatcher()


@pytest.fixture
def gateway():
    return MockPaymentGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def receipts():
    return RecordingDispatcher()


@pytest.fixture
def counter_store():
    return MemoryCounterStore()


@pytest.fixture
async def client(session_factory, gateway, receipts, counter_store):
    from food_ordering.api.deps import get_gateway, get_rate_limit_store, get_receipts
    from food_ordering.database import get_db
    from food_ordering.main import app

    async def _get_db():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_receipts] = lambda: receipts
    app.dependency_overrides[get_rate_limit_store] = lambda: counter_store

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
