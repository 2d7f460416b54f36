import os

# Must be in place before any application module is imported
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CATALOG_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TRACING_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from main import app
from shared.config.database import Base, CatalogBase, get_catalog_db, get_db
from shared.security import create_access_token
from services.order_service.models import Order, OrderItem
from services.payment_service.models import Payment
from services.payment_service.processors import get_payment_processors
from services.product_service.models import Product
from fakes import FakeProcessor

ADMIN_HEADERS = {"X-Internal-API-Key": "test-internal-key"}

ADDRESS = {
    "fullName": "Ada Lovelace",
    "street": "12 Analytical Row",
    "city": "London",
    "postalCode": "N1 9GU",
    "country": "GB",
}


def auth_headers(user_id: int = 1) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


@pytest.fixture
async def order_sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture
async def catalog_sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(CatalogBase.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture
def processors():
    return {"stripe": FakeProcessor("stripe"), "paypal": FakeProcessor("paypal")}


@pytest.fixture
async def client(order_sessions, catalog_sessions, processors):
    async def _get_db():
        async with order_sessions() as session:
            yield session

    async def _get_catalog_db():
        async with catalog_sessions() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_catalog_db] = _get_catalog_db
    app.dependency_overrides[get_payment_processors] = lambda: processors
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def add_product(catalog_sessions):
    async def _add(name="Widget", price="10.00", inventory=10, **extra) -> str:
        async with catalog_sessions() as session:
            product = Product(
                name=name,
                price=Decimal(price),
                category=extra.pop("category", "gadgets"),
                inventory=inventory,
                **extra,
            )
            session.add(product)
            await session.commit()
            return product.id
    return _add


@pytest.fixture
def inventory_of(catalog_sessions):
    async def _inventory(product_id: str) -> int:
        async with catalog_sessions() as session:
            return await session.scalar(select(Product.inventory).where(Product.id == product_id))
    return _inventory


@pytest.fixture
def row_counts(order_sessions):
    async def _counts() -> dict:
        async with order_sessions() as session:
            return {
                "orders": await session.scalar(select(func.count(Order.id))),
                "order_items": await session.scalar(select(func.count(OrderItem.id))),
                "payments": await session.scalar(select(func.count(Payment.id))),
            }
    return _counts


@pytest.fixture
def place_order(client, add_product):
    """Checkout helper: creates products if needed and returns the 201 body."""
    async def _place(items=None, user_id: int = 1, payment_method=None) -> dict:
        if items is None:
            pid = await add_product()
            items = [{"productId": pid, "quantity": 1}]
        body = {"items": items, "shippingAddress": ADDRESS}
        if payment_method:
            body["paymentMethod"] = payment_method
        resp = await client.post("/orders", json=body, headers=auth_headers(user_id))
        assert resp.status_code == 201, resp.text
        return resp.json()
    return _place
