"""
注文サービス — オーケストレーター

アプリケーションの他の部分が注文を作成・変更するときの唯一の入口。

  place_order のフロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. リクエストの形を検証 (明細が空でない・数量 1〜99)       │
  │  2. カタログで全商品を解決                                 │
  │     └─ 1つでも存在しない/販売停止 → 注文全体を失敗にする     │
  │  3. ストアに注文を作成 (ここで確定)                         │
  │  4. order_created をディスパッチ (シンクの失敗は無視)        │
  └─────────────────────────────────────────────────────────┘

変更系の操作は、認可チェック → ストア呼び出し → activity イベント、の順。
認可に失敗した場合、ストアには一切触れない。
"""

import logging
from dataclasses import dataclass

from . import events
from .aggregate import (
    BUYER_STATUSES,
    can_access,
    normalize_reason,
    parse_status,
    validate_quantity,
)
from .auth import require_admin
from .catalog import Catalog
from .dispatcher import EventDispatcher
from .errors import AccessDenied, NotFound, ProductUnavailable, ValidationFailed
from .events import Actor
from .models import Buyer, Identity, Order, OrderLine, OrderStatus
from .order_store import OrderStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestedLine:
    product_id: str
    quantity: int


class OrderService:
    def __init__(
        self,
        store: OrderStore,
        catalog: Catalog,
        dispatcher: EventDispatcher,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.dispatcher = dispatcher

    # ── 作成 ─────────────────────────────────────

    async def place_order(
        self, identity: Identity, requested: list[RequestedLine]
    ) -> Order:
        if not requested:
            raise ValidationFailed("An order needs at least one item.")
        for item in requested:
            validate_quantity(item.quantity)

        lines: list[OrderLine] = []
        for item in requested:
            product = await self.catalog.get_product(item.product_id)
            if product is None or not product.is_active:
                raise ProductUnavailable(f"Product is not available: {item.product_id}")
            lines.append(OrderLine.snapshot(product, item.quantity))

        order = await self.store.create_order(Buyer.from_identity(identity), lines)
        logger.info(
            "Order %s created by %s (%d lines, total %d)",
            order.id, identity.user_id, len(order.lines), order.total,
        )

        await self.dispatcher.dispatch(events.order_created(order, Actor.of(identity)))
        return order

    # ── 参照 ─────────────────────────────────────

    async def get_order(self, identity: Identity, order_id: str) -> Order:
        order = await self._load(order_id)
        if not can_access(order, identity):
            raise AccessDenied("Access denied.")
        return order

    # ── 状態遷移 ─────────────────────────────────

    async def set_status(
        self, identity: Identity, order_id: str, status: OrderStatus
    ) -> Order:
        status = parse_status(status)
        order = await self._load(order_id)
        if not can_access(order, identity):
            raise AccessDenied("Access denied.")
        if not identity.is_admin and status not in BUYER_STATUSES:
            raise AccessDenied(f"Buyers cannot set status to {status.value}.")

        updated = await self.store.update_status(order_id, status)
        if updated is None:
            raise NotFound("Order not found.")

        await self.dispatcher.dispatch(events.status_changed(updated, Actor.of(identity)))
        return updated

    async def request_cancellation(
        self, identity: Identity, order_id: str, reason: str
    ) -> Order:
        reason = normalize_reason(reason)
        order = await self._load(order_id)
        if not can_access(order, identity):
            raise AccessDenied("Access denied.")

        updated = await self.store.request_cancellation(order_id, reason)
        if updated is None:
            raise NotFound("Order not found.")

        logger.info("Cancellation requested for order %s by %s", order_id, identity.user_id)
        await self.dispatcher.dispatch(events.cancel_requested(updated, Actor.of(identity)))
        return updated

    async def confirm_cancellation(self, identity: Identity, order_id: str) -> Order:
        require_admin(identity)

        updated = await self.store.confirm_cancellation(order_id)
        if updated is None:
            raise NotFound("Order not found.")

        logger.info("Cancellation of order %s confirmed by %s", order_id, identity.user_id)
        await self.dispatcher.dispatch(events.cancel_confirmed(updated, Actor.of(identity)))
        return updated

    async def delete_order(self, identity: Identity, order_id: str) -> None:
        require_admin(identity)

        if not await self.store.delete_order(order_id):
            raise NotFound("Order not found.")

        logger.info("Order %s deleted by %s", order_id, identity.user_id)
        await self.dispatcher.dispatch(events.order_deleted(order_id, Actor.of(identity)))

    async def record_access(self, identity: Identity, path: str) -> None:
        path = (path or "").strip()
        if not path or len(path) > 200:
            raise ValidationFailed("Path must be between 1 and 200 characters.")
        await self.dispatcher.dispatch(events.user_access(path, Actor.of(identity)))

    # ── helpers ──────────────────────────────────

    async def _load(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFound("Order not found.")
        return order
