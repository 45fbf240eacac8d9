"""
Pytest configuration and fixtures
"""

import json
from typing import AsyncGenerator, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from core.config import TenantConfig
from core.database import build_session_maker
from models.base import Base


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite database per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'sync_test.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
        # Let SQLAlchemy emit BEGIN itself (see _on_begin)
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        # Writers queue on the database lock instead of failing mid-transaction
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def tenant_config() -> TenantConfig:
    return TenantConfig(
        tenant_id="acme",
        api_base_url="https://acme.example.com/admin/api/2024-01/",
        access_token="shpat_test_token",
        page_size=50,
        retry_base_delay_seconds=0.5,
        retry_max_delay_seconds=8.0,
        retry_jitter_seconds=0.0,
        max_request_attempts=3,
        max_retries=3,
        batch_size=4,
        business_hours_start=0,
        business_hours_end=24,
    )


@pytest.fixture
def order_payload() -> Dict:
    return {
        "id": 450789469,
        "order_number": 1001,
        "name": "#1001",
        "email": "fallback@example.com",
        "customer": {"email": "bob@example.com", "first_name": "Bob", "last_name": "Norman"},
        "total_price": "598.94",
        "subtotal_price": "597.00",
        "total_tax": "11.94",
        "currency": "usd",
        "financial_status": "paid",
        "fulfillment_status": None,
        "created_at": "2024-01-15T10:00:00-05:00",
        "updated_at": "2024-01-15T11:30:00Z",
        "closed_at": None,
        "tags": "vip, repeat,vip",
        "line_items": [
            {"id": 466157049, "title": "IPod Nano", "quantity": 1, "price": "199.00", "sku": "IPOD2008GREEN"},
            {"id": 518995019, "title": "IPod Nano", "quantity": 2, "price": "199.00", "sku": "IPOD2008RED"},
        ],
    }


@pytest.fixture
def product_payload() -> Dict:
    return {
        "id": 632910392,
        "title": "IPod Nano - 8GB",
        "handle": "ipod-nano",
        "vendor": "Apple",
        "product_type": "Cult Products",
        "status": "active",
        "tags": ["Emotive", "Flash Memory", "MP3"],
        "image": {"src": "https://cdn.example.com/ipod-nano.png"},
        "created_at": "2024-01-10T08:00:00Z",
        "updated_at": "2024-01-15T09:00:00Z",
        "variants": [
            {"id": 808950810, "title": "Pink", "price": "199.00", "sku": "IPOD2008PINK", "inventory_quantity": 10},
            {"id": 49148385, "title": "Red", "price": "199.00", "sku": "IPOD2008RED", "inventory_quantity": 20},
        ],
    }


def make_order(order_id, total_price="10.00", **overrides) -> Dict:
    """Minimal upstream order with one line item"""
    order = {
        "id": order_id,
        "name": f"#{order_id}",
        "email": f"customer{order_id}@example.com",
        "total_price": total_price,
        "currency": "USD",
        "updated_at": "2024-01-15T10:00:00Z",
        "line_items": [{"id": f"{order_id}-1", "title": "Widget", "quantity": 1, "price": total_price}],
    }
    order.update(overrides)
    return order


class UpstreamStub:
    """
    httpx.MockTransport handler serving orders/products pages.

    ``pages`` maps entity ("orders", "products") to a list of pages; the
    cursor of page N+1 is ``"<entity>-<N+1>"``. ``status`` forces a
    status code per entity.
    """

    def __init__(
        self,
        pages: Optional[Dict[str, List[List[Dict]]]] = None,
        status: Optional[Dict[str, int]] = None,
        use_link_header: bool = True,
    ):
        self.pages = pages or {}
        self.status = status or {}
        self.use_link_header = use_link_header
        self.requests: List[httpx.Request] = []

    def entity_of(self, request: httpx.Request) -> str:
        return request.url.path.rsplit("/", 1)[-1].replace(".json", "")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        entity = self.entity_of(request)

        if entity in self.status:
            return httpx.Response(self.status[entity], json={"errors": "forced"})

        pages = self.pages.get(entity, [[]])
        cursor = request.url.params.get("page_info")
        index = int(cursor.rsplit("-", 1)[-1]) if cursor else 0
        items = pages[index] if index < len(pages) else []

        headers = {"X-Shopify-Shop-Api-Call-Limit": "1/40"}
        body = {entity: items}
        if index + 1 < len(pages):
            next_cursor = f"{entity}-{index + 1}"
            if self.use_link_header:
                next_url = f"{request.url.scheme}://{request.url.host}{request.url.path}?limit=50&page_info={next_cursor}"
                headers["Link"] = f'<{next_url}>; rel="next"'
            else:
                body["next_cursor"] = next_cursor
        return httpx.Response(200, headers=headers, content=json.dumps(body).encode())

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def upstream_stub() -> Callable[..., UpstreamStub]:
    return UpstreamStub


@pytest.fixture
def order_factory() -> Callable[..., Dict]:
    return make_order


@pytest.fixture
def fast_sleep():
    return no_sleep
