"""
注文ストア — SQL バックエンド

SQLAlchemy の非同期エンジン上で生 SQL を実行する。
ヘッダ(orders)と明細(order_items)は1トランザクションで書き込み、
さらに一覧・取得では明細を1件以上持つ注文だけを返す。
自動コミットのドライバでも「明細のない注文」が見えないようにするため。

状態の更新は WHERE 句に前提条件を含めた単一の UPDATE で行い、
読み込み→書き戻しによる更新の消失を避ける。
"""

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .aggregate import (
    ensure_cancellation_confirmable,
    ensure_cancellation_requestable,
    new_order,
    normalize_reason,
    parse_status,
)
from .errors import wrap_storage_errors
from .models import (
    Buyer,
    CancelRequest,
    CancelStatus,
    Order,
    OrderLine,
    OrderStatus,
    from_millis,
    to_millis,
    truncate_millis,
    utcnow,
)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        user_name TEXT NOT NULL,
        user_email TEXT NOT NULL,
        user_phone TEXT NOT NULL DEFAULT '',
        total BIGINT NOT NULL,
        status TEXT NOT NULL DEFAULT 'new',
        cancel_status TEXT NOT NULL DEFAULT 'none',
        cancel_reason TEXT NOT NULL DEFAULT '',
        cancel_requested_at BIGINT,
        cancel_confirmed_at BIGINT,
        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL,
        line_no INTEGER NOT NULL,
        product_id TEXT NOT NULL,
        product_name TEXT NOT NULL,
        product_duration TEXT NOT NULL DEFAULT '',
        quantity INTEGER NOT NULL,
        unit_price BIGINT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_created_at ON orders (created_at)",
    "CREATE INDEX IF NOT EXISTS ix_order_items_order_id ON order_items (order_id)",
    # カタログ (SqlCatalog が参照する)
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        duration TEXT NOT NULL DEFAULT '',
        price BIGINT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
)

_HAS_LINES = "EXISTS (SELECT 1 FROM order_items i WHERE i.order_id = o.id)"

_storage_errors = wrap_storage_errors(SQLAlchemyError)


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for ddl in SCHEMA:
            await conn.execute(text(ddl))


def _line_from_row(row) -> OrderLine:
    return OrderLine(
        product_id=row.product_id,
        name=row.product_name,
        duration=row.product_duration,
        quantity=row.quantity,
        unit_price=row.unit_price,
    )


def _order_from_row(row, lines: list[OrderLine]) -> Order:
    return Order(
        id=row.id,
        buyer=Buyer(
            user_id=row.user_id,
            name=row.user_name,
            email=row.user_email,
            phone=row.user_phone,
        ),
        lines=lines,
        total=row.total,
        status=OrderStatus(row.status),
        cancel_request=CancelRequest(
            status=CancelStatus(row.cancel_status),
            reason=row.cancel_reason,
            requested_at=from_millis(row.cancel_requested_at),
            confirmed_at=from_millis(row.cancel_confirmed_at),
        ),
        created_at=from_millis(row.created_at),
        updated_at=from_millis(row.updated_at),
    )


class SqlOrderStore:
    """ローカル DB (SQLite / PostgreSQL) に注文を保存する。"""

    def __init__(
        self,
        engine: AsyncEngine,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.async_session = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        self.clock = clock

    def _now(self) -> datetime:
        return truncate_millis(self.clock())

    @_storage_errors
    async def init(self) -> None:
        await init_schema(self.engine)

    # ── 作成 ─────────────────────────────────────

    @_storage_errors
    async def create_order(self, buyer: Buyer, lines: list[OrderLine]) -> Order:
        order = new_order(buyer, lines, self._now())
        now_ms = to_millis(order.created_at)

        # commit されるまではヘッダも明細も他のセッションから見えない
        async with self.async_session() as session:
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, user_id, user_name, user_email, user_phone, total,
                         status, cancel_status, cancel_reason, created_at, updated_at)
                    VALUES
                        (:id, :user_id, :user_name, :user_email, :user_phone, :total,
                         'new', 'none', '', :now, :now)
                """),
                {
                    "id": order.id,
                    "user_id": buyer.user_id,
                    "user_name": buyer.name,
                    "user_email": buyer.email,
                    "user_phone": buyer.phone,
                    "total": order.total,
                    "now": now_ms,
                },
            )
            for line_no, line in enumerate(order.lines):
                await session.execute(
                    text("""
                        INSERT INTO order_items
                            (id, order_id, line_no, product_id, product_name,
                             product_duration, quantity, unit_price)
                        VALUES
                            (:id, :order_id, :line_no, :product_id, :product_name,
                             :product_duration, :quantity, :unit_price)
                    """),
                    {
                        "id": f"{order.id}-{line_no + 1}",
                        "order_id": order.id,
                        "line_no": line_no,
                        "product_id": line.product_id,
                        "product_name": line.name,
                        "product_duration": line.duration,
                        "quantity": line.quantity,
                        "unit_price": line.unit_price,
                    },
                )
            await session.commit()

        return order

    # ── 読み取り ─────────────────────────────────

    async def _load_lines(
        self, session: AsyncSession, order_ids: list[str]
    ) -> dict[str, list[OrderLine]]:
        if not order_ids:
            return {}
        result = await session.execute(
            text("""
                SELECT * FROM order_items
                WHERE order_id IN :ids
                ORDER BY order_id, line_no
            """).bindparams(bindparam("ids", expanding=True)),
            {"ids": order_ids},
        )
        lines: dict[str, list[OrderLine]] = {}
        for row in result.fetchall():
            lines.setdefault(row.order_id, []).append(_line_from_row(row))
        return lines

    @_storage_errors
    async def get_order(self, order_id: str) -> Order | None:
        async with self.async_session() as session:
            result = await session.execute(
                text(f"SELECT * FROM orders o WHERE o.id = :id AND {_HAS_LINES}"),
                {"id": order_id},
            )
            row = result.fetchone()
            if not row:
                return None
            lines = await self._load_lines(session, [row.id])
            return _order_from_row(row, lines.get(row.id, []))

    @_storage_errors
    async def list_orders(
        self,
        limit: int,
        buyer_email: str | None = None,
        since: datetime | None = None,
    ) -> list[Order]:
        clauses = [_HAS_LINES]
        params: dict = {"limit": max(1, limit)}
        if buyer_email is not None:
            clauses.append("lower(o.user_email) = :email")
            params["email"] = buyer_email.lower()
        if since is not None:
            clauses.append("o.created_at >= :since")
            params["since"] = to_millis(since)

        where = " AND ".join(clauses)
        async with self.async_session() as session:
            result = await session.execute(
                text(f"""
                    SELECT * FROM orders o
                    WHERE {where}
                    ORDER BY o.created_at DESC, o.id DESC
                    LIMIT :limit
                """),
                params,
            )
            rows = result.fetchall()
            lines = await self._load_lines(session, [row.id for row in rows])
            return [_order_from_row(row, lines.get(row.id, [])) for row in rows]

    # ── 状態遷移 ─────────────────────────────────

    async def _execute_update(self, sql: str, params: dict) -> int:
        async with self.async_session() as session:
            result = await session.execute(text(sql), params)
            await session.commit()
            return result.rowcount

    @_storage_errors
    async def update_status(self, order_id: str, status: OrderStatus) -> Order | None:
        updated = await self._execute_update(
            """
            UPDATE orders SET status = :status, updated_at = :now
            WHERE id = :id
            """,
            {
                "id": order_id,
                "status": parse_status(status).value,
                "now": to_millis(self._now()),
            },
        )
        if not updated:
            return None
        return await self.get_order(order_id)

    @_storage_errors
    async def request_cancellation(self, order_id: str, reason: str) -> Order | None:
        reason = normalize_reason(reason)
        now_ms = to_millis(self._now())
        updated = await self._execute_update(
            """
            UPDATE orders
            SET cancel_status = 'requested',
                cancel_reason = :reason,
                cancel_requested_at = :now,
                updated_at = :now
            WHERE id = :id AND cancel_status <> 'confirmed'
            """,
            {"id": order_id, "reason": reason, "now": now_ms},
        )
        if not updated:
            # 存在しないのか、前提条件違反なのかを区別する
            current = await self.get_order(order_id)
            if current is None:
                return None
            ensure_cancellation_requestable(current)
        return await self.get_order(order_id)

    @_storage_errors
    async def confirm_cancellation(self, order_id: str) -> Order | None:
        now_ms = to_millis(self._now())
        updated = await self._execute_update(
            """
            UPDATE orders
            SET cancel_status = 'confirmed',
                cancel_confirmed_at = :now,
                updated_at = :now
            WHERE id = :id AND cancel_status = 'requested'
            """,
            {"id": order_id, "now": now_ms},
        )
        if not updated:
            current = await self.get_order(order_id)
            if current is None:
                return None
            ensure_cancellation_confirmable(current)
        return await self.get_order(order_id)

    @_storage_errors
    async def delete_order(self, order_id: str) -> bool:
        async with self.async_session() as session:
            await session.execute(
                text("DELETE FROM order_items WHERE order_id = :id"),
                {"id": order_id},
            )
            result = await session.execute(
                text("DELETE FROM orders WHERE id = :id"),
                {"id": order_id},
            )
            await session.commit()
            return result.rowcount > 0
