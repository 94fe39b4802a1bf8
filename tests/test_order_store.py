"""
注文ストアのテスト

同じシナリオを SQL バックエンドと Redis バックエンドの両方で実行する。
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import text

from tokko_orders.errors import CancellationConflict, StorageError, ValidationFailed
from tokko_orders.models import Buyer, CancelStatus, OrderStatus
from tokko_orders.redis_store import RedisOrderStore
from tokko_orders.sql_store import SqlOrderStore

from .factories import make_line


class SteppingClock:
    """呼ばれるたびに1秒進む時計"""

    def __init__(self):
        self.now = datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest_asyncio.fixture(params=["sql", "redis"])
async def store(request, engine, fake_redis):
    clock = SteppingClock()
    if request.param == "sql":
        return SqlOrderStore(engine, clock=clock)
    return RedisOrderStore(fake_redis, clock=clock)


def two_lines():
    return [
        make_line("p-a", "Netflix Premium", quantity=2, unit_price=10000),
        make_line("p-b", "Spotify Family", quantity=1, unit_price=5000),
    ]


# ── 作成 / 取得 ──────────────────────────────────


@pytest.mark.asyncio
async def test_create_and_get_round_trip(store, buyer):
    created = await store.create_order(buyer, two_lines())
    fetched = await store.get_order(created.id)

    assert fetched == created
    assert fetched.total == 25000
    assert [line.name for line in fetched.lines] == ["Netflix Premium", "Spotify Family"]
    assert fetched.status == OrderStatus.NEW
    assert fetched.cancel_request.status == CancelStatus.NONE


@pytest.mark.asyncio
async def test_empty_lines_persist_nothing(store, buyer):
    with pytest.raises(ValidationFailed):
        await store.create_order(buyer, [])
    assert await store.list_orders(10) == []


@pytest.mark.asyncio
async def test_get_unknown_order_returns_none(store):
    assert await store.get_order("does-not-exist") is None


@pytest.mark.asyncio
async def test_list_newest_first_and_filtered_by_email(store, buyer):
    other = Buyer(user_id="u-2", name="Budi", email="budi@example.com")
    first = await store.create_order(buyer, [make_line()])
    second = await store.create_order(other, [make_line()])
    third = await store.create_order(buyer, [make_line()])

    everything = await store.list_orders(10)
    assert [o.id for o in everything] == [third.id, second.id, first.id]

    mine = await store.list_orders(10, buyer_email="SARI@example.com")
    assert [o.id for o in mine] == [third.id, first.id]

    assert len(await store.list_orders(2)) == 2


@pytest.mark.asyncio
async def test_list_since(store, buyer):
    old = await store.create_order(buyer, [make_line()])
    new = await store.create_order(buyer, [make_line()])

    recent = await store.list_orders(10, since=new.created_at)
    assert [o.id for o in recent] == [new.id]
    assert old.id not in [o.id for o in recent]


# ── 状態遷移 ─────────────────────────────────────


@pytest.mark.asyncio
async def test_update_status(store, buyer):
    order = await store.create_order(buyer, [make_line()])

    updated = await store.update_status(order.id, OrderStatus.DONE)

    assert updated.status == OrderStatus.DONE
    assert updated.updated_at > order.updated_at
    assert updated.total == order.total
    assert await store.update_status("missing", OrderStatus.DONE) is None


@pytest.mark.asyncio
async def test_cancellation_flow(store, buyer):
    order = await store.create_order(buyer, [make_line()])

    requested = await store.request_cancellation(order.id, "barang tidak sesuai harapan saya")
    assert requested.cancel_request.status == CancelStatus.REQUESTED
    assert requested.cancel_request.reason == "barang tidak sesuai harapan saya"
    assert requested.cancel_request.requested_at is not None

    confirmed = await store.confirm_cancellation(order.id)
    assert confirmed.cancel_request.status == CancelStatus.CONFIRMED
    assert confirmed.cancel_request.confirmed_at is not None
    assert confirmed.is_cancelled


@pytest.mark.asyncio
async def test_repeated_request_overwrites_reason(store, buyer):
    order = await store.create_order(buyer, [make_line()])
    first = await store.request_cancellation(order.id, "first reason")
    second = await store.request_cancellation(order.id, "second reason")

    assert second.cancel_request.status == CancelStatus.REQUESTED
    assert second.cancel_request.reason == "second reason"
    assert second.cancel_request.requested_at > first.cancel_request.requested_at


@pytest.mark.asyncio
async def test_confirm_without_request_is_policy_violation(store, buyer):
    order = await store.create_order(buyer, [make_line()])

    with pytest.raises(CancellationConflict):
        await store.confirm_cancellation(order.id)

    unchanged = await store.get_order(order.id)
    assert unchanged.cancel_request.status == CancelStatus.NONE
    assert unchanged.cancel_request.confirmed_at is None


@pytest.mark.asyncio
async def test_confirmed_cancellation_is_terminal(store, buyer):
    order = await store.create_order(buyer, [make_line()])
    await store.request_cancellation(order.id, "wrong account email")
    await store.confirm_cancellation(order.id)

    with pytest.raises(CancellationConflict):
        await store.request_cancellation(order.id, "please cancel again")
    with pytest.raises(CancellationConflict):
        await store.confirm_cancellation(order.id)

    # status は独立して変えられるが、キャンセル済みのまま
    after = await store.update_status(order.id, OrderStatus.PROCESS)
    assert after.cancel_request.status == CancelStatus.CONFIRMED


@pytest.mark.asyncio
async def test_cancellation_on_missing_order_returns_none(store):
    assert await store.request_cancellation("missing", "long enough") is None
    assert await store.confirm_cancellation("missing") is None


@pytest.mark.asyncio
async def test_short_reason_rejected(store, buyer):
    order = await store.create_order(buyer, [make_line()])
    with pytest.raises(ValidationFailed):
        await store.request_cancellation(order.id, "  no ")
    assert (await store.get_order(order.id)).cancel_request.status == CancelStatus.NONE


@pytest.mark.asyncio
async def test_delete_order(store, buyer):
    order = await store.create_order(buyer, [make_line()])

    assert await store.delete_order(order.id) is True
    assert await store.get_order(order.id) is None
    assert await store.list_orders(10) == []
    assert await store.list_orders(10, buyer_email=buyer.email) == []
    assert await store.delete_order(order.id) is False


@pytest.mark.asyncio
async def test_concurrent_requests_never_undo_confirmation(store, buyer):
    order = await store.create_order(buyer, [make_line()])
    await store.request_cancellation(order.id, "first reason")

    results = await asyncio.gather(
        store.confirm_cancellation(order.id),
        store.request_cancellation(order.id, "late re-request"),
        return_exceptions=True,
    )

    final = await store.get_order(order.id)
    assert final.cancel_request.status == CancelStatus.CONFIRMED
    for result in results:
        assert not isinstance(result, Exception) or isinstance(result, CancellationConflict)


# ── バックエンド固有 ─────────────────────────────


@pytest.mark.asyncio
async def test_sql_line_failure_leaves_no_header(engine, buyer):
    store = SqlOrderStore(engine)
    async with engine.begin() as conn:
        await conn.execute(text("""
            CREATE TRIGGER reject_boom BEFORE INSERT ON order_items
            WHEN NEW.product_id = 'boom'
            BEGIN SELECT RAISE(ABORT, 'line write failed'); END
        """))

    with pytest.raises(StorageError):
        await store.create_order(buyer, [make_line("p-a"), make_line("boom")])

    async with engine.connect() as conn:
        headers = (await conn.execute(text("SELECT COUNT(*) FROM orders"))).scalar()
        items = (await conn.execute(text("SELECT COUNT(*) FROM order_items"))).scalar()
    assert headers == 0
    assert items == 0


@pytest.mark.asyncio
async def test_sql_header_without_lines_is_invisible(engine):
    store = SqlOrderStore(engine)
    async with engine.begin() as conn:
        await conn.execute(text("""
            INSERT INTO orders (id, user_id, user_name, user_email, user_phone, total,
                                status, cancel_status, cancel_reason, created_at, updated_at)
            VALUES ('orphan', 'u-1', 'Sari', 'sari@example.com', '', 100,
                    'new', 'none', '', 1, 1)
        """))

    assert await store.get_order("orphan") is None
    assert await store.list_orders(10) == []


@pytest.mark.asyncio
async def test_redis_errors_surface_as_storage_errors(buyer, monkeypatch, fake_redis):
    store = RedisOrderStore(fake_redis)

    async def broken(*args, **kwargs):
        raise RedisConnectionError("connection lost")

    monkeypatch.setattr(fake_redis, "get", broken)
    with pytest.raises(StorageError):
        await store.get_order("anything")


@pytest.mark.asyncio
async def test_unknown_status_rejected(store, buyer):
    order = await store.create_order(buyer, [make_line()])

    with pytest.raises(ValidationFailed):
        await store.update_status(order.id, "shipped")

    assert (await store.get_order(order.id)).status == OrderStatus.NEW
