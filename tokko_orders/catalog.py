"""
カタログ参照

注文サービスは商品の「今の」名前・期間・単価を引いて明細に焼き込む。
存在しない商品と販売停止中の商品はどちらも無効な明細として扱う。

    SqlCatalog   同じ DB の products テーブルを読む
    HttpCatalog  カタログサービスの Query API を叩く
"""

from typing import Protocol

import httpx
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import wrap_storage_errors
from .models import Product
from .sql_store import init_schema


class Catalog(Protocol):
    async def get_product(self, product_id: str) -> Product | None: ...


class SqlCatalog:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.async_session = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    @wrap_storage_errors(SQLAlchemyError)
    async def init(self) -> None:
        await init_schema(self.engine)

    @wrap_storage_errors(SQLAlchemyError)
    async def get_product(self, product_id: str) -> Product | None:
        async with self.async_session() as session:
            result = await session.execute(
                text("""
                    SELECT id, name, duration, price, is_active
                    FROM products WHERE id = :id
                """),
                {"id": product_id},
            )
            row = result.fetchone()
            if not row:
                return None
            return Product(
                id=row.id,
                name=row.name,
                duration=row.duration or "",
                unit_price=int(row.price),
                is_active=bool(row.is_active),
            )


class HttpCatalog:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    # 壊れた応答 (JSON でない、形が違う) もカタログ障害として扱う
    @wrap_storage_errors(httpx.HTTPError, ValueError, TypeError)
    async def get_product(self, product_id: str) -> Product | None:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            resp = await client.get(f"{self.base_url}/queries/products/{product_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            data = resp.json()

        if not isinstance(data, dict):
            raise TypeError(f"Unexpected catalog payload: {type(data).__name__}")
        return Product(
            id=str(data.get("id") or data.get("product_id") or product_id),
            name=data.get("name") or data.get("product_name") or "",
            duration=data.get("duration") or "",
            unit_price=int(data.get("price", data.get("unit_price", 0))),
            is_active=bool(data.get("is_active", True)),
        )
