"""
注文ストア — ドキュメントストア (Redis) バックエンド

注文1件を1つの JSON ドキュメント (order:{id}) として保存し、
一覧用に作成時刻をスコアにした Sorted Set を2本持つ:

    orders:by_created            全注文 (新しい順に引く)
    orders:by_email:{email}      購入者メールアドレスごと

作成は MULTI/EXEC でドキュメントとインデックスを同時に書く。
更新は WATCH による楽観的ロック(compare-and-set)で行い、
並行更新による上書き消失を防ぐ。
"""

from collections.abc import Callable
from datetime import datetime

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from .aggregate import (
    apply_cancel_confirmed,
    apply_cancel_requested,
    apply_status,
    new_order,
    normalize_reason,
    parse_status,
)
from .errors import wrap_storage_errors
from .models import (
    Buyer,
    Order,
    OrderLine,
    OrderStatus,
    to_millis,
    truncate_millis,
    utcnow,
)

INDEX_KEY = "orders:by_created"

_storage_errors = wrap_storage_errors(RedisError)


def _order_key(order_id: str) -> str:
    return f"order:{order_id}"


def _email_index_key(email: str) -> str:
    return f"orders:by_email:{email.lower()}"


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisOrderStore:
    """外部ドキュメントストアに注文を保存する。"""

    def __init__(
        self,
        redis: aioredis.Redis,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.redis = redis
        self.clock = clock

    def _now(self) -> datetime:
        return truncate_millis(self.clock())

    @_storage_errors
    async def init(self) -> None:
        await self.redis.ping()

    @_storage_errors
    async def create_order(self, buyer: Buyer, lines: list[OrderLine]) -> Order:
        order = new_order(buyer, lines, self._now())
        score = to_millis(order.created_at)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(_order_key(order.id), order.model_dump_json())
            pipe.zadd(INDEX_KEY, {order.id: score})
            pipe.zadd(_email_index_key(buyer.email), {order.id: score})
            await pipe.execute()

        return order

    @_storage_errors
    async def get_order(self, order_id: str) -> Order | None:
        raw = await self.redis.get(_order_key(order_id))
        if raw is None:
            return None
        return Order.model_validate_json(raw)

    @_storage_errors
    async def list_orders(
        self,
        limit: int,
        buyer_email: str | None = None,
        since: datetime | None = None,
    ) -> list[Order]:
        index = INDEX_KEY if buyer_email is None else _email_index_key(buyer_email)
        limit = max(1, limit)
        if since is None:
            ids = await self.redis.zrevrange(index, 0, limit - 1)
        else:
            ids = await self.redis.zrevrangebyscore(
                index, "+inf", to_millis(since), start=0, num=limit
            )
        if not ids:
            return []

        raws = await self.redis.mget([_order_key(_text(i)) for i in ids])
        # 削除と一覧が競合した場合はインデックスだけ残ることがある
        return [Order.model_validate_json(raw) for raw in raws if raw is not None]

    async def _compare_and_set(
        self, order_id: str, transition: Callable[[Order], Order]
    ) -> Order | None:
        key = _order_key(order_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return None
                    updated = transition(Order.model_validate_json(raw))
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    await pipe.execute()
                    return updated
                except WatchError:
                    # 他の書き込みが割り込んだ。最新の状態から再判定する
                    continue

    @_storage_errors
    async def update_status(self, order_id: str, status: OrderStatus) -> Order | None:
        status = parse_status(status)
        now = self._now()
        return await self._compare_and_set(
            order_id, lambda order: apply_status(order, status, now)
        )

    @_storage_errors
    async def request_cancellation(self, order_id: str, reason: str) -> Order | None:
        reason = normalize_reason(reason)
        now = self._now()
        return await self._compare_and_set(
            order_id, lambda order: apply_cancel_requested(order, reason, now)
        )

    @_storage_errors
    async def confirm_cancellation(self, order_id: str) -> Order | None:
        now = self._now()
        return await self._compare_and_set(
            order_id, lambda order: apply_cancel_confirmed(order, now)
        )

    @_storage_errors
    async def delete_order(self, order_id: str) -> bool:
        key = _order_key(order_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return False
                    order = Order.model_validate_json(raw)
                    pipe.multi()
                    pipe.delete(key)
                    pipe.zrem(INDEX_KEY, order_id)
                    pipe.zrem(_email_index_key(order.buyer.email), order_id)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue
