"""
注文ストア — インターフェース

注文の状態を変更できるのはストアだけ。
バックエンドは起動時に設定で一度だけ選び、
それ以外のコードはこのインターフェースだけに依存する。
"""

from datetime import datetime
from typing import Protocol

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Settings
from .models import Buyer, Order, OrderLine, OrderStatus
from .redis_store import RedisOrderStore
from .sql_store import SqlOrderStore


class OrderStore(Protocol):
    async def init(self) -> None: ...

    async def create_order(self, buyer: Buyer, lines: list[OrderLine]) -> Order: ...

    async def get_order(self, order_id: str) -> Order | None: ...

    async def list_orders(
        self,
        limit: int,
        buyer_email: str | None = None,
        since: datetime | None = None,
    ) -> list[Order]: ...

    async def update_status(
        self, order_id: str, status: OrderStatus
    ) -> Order | None: ...

    async def request_cancellation(
        self, order_id: str, reason: str
    ) -> Order | None: ...

    async def confirm_cancellation(self, order_id: str) -> Order | None: ...

    async def delete_order(self, order_id: str) -> bool: ...


def build_order_store(
    settings: Settings,
    engine: AsyncEngine,
    redis: aioredis.Redis | None = None,
) -> OrderStore:
    if settings.store_backend == "redis":
        if redis is None:
            raise ValueError("STORE_BACKEND=redis requires a Redis connection")
        return RedisOrderStore(redis)
    if settings.store_backend == "sql":
        return SqlOrderStore(engine)
    raise ValueError(f"Unknown STORE_BACKEND: {settings.store_backend!r}")
