"""
共通フィクスチャ

SQL バックエンドは一時ディレクトリの SQLite (aiosqlite)、
Redis バックエンドとメトリクスは fakeredis で動かす。
"""

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from tokko_orders.models import Buyer, Identity, Role
from tokko_orders.sql_store import SqlOrderStore, init_schema


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"


@pytest_asyncio.fixture
async def engine(database_url):
    engine = create_async_engine(database_url, echo=False)
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_store(engine):
    return SqlOrderStore(engine)


@pytest_asyncio.fixture
async def fake_redis():
    redis = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield redis
    await redis.aclose()


@pytest.fixture
def buyer_identity():
    return Identity(
        user_id="u-1", role=Role.USER, email="sari@example.com",
        name="Sari", phone="08123456789",
    )


@pytest.fixture
def other_identity():
    return Identity(
        user_id="u-2", role=Role.USER, email="budi@example.com", name="Budi",
    )


@pytest.fixture
def admin_identity():
    return Identity(
        user_id="admin-1", role=Role.ADMIN, email="admin@example.com", name="Admin",
    )


@pytest.fixture
def buyer(buyer_identity):
    return Buyer.from_identity(buyer_identity)
