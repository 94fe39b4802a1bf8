"""
注文集約 — 不変条件と状態遷移のルール

status と cancel_request は独立した2本の軸:

    status:          new / process / done / error  (誰がいつ変えてもよい)
    cancel_request:  none → requested → confirmed  (後戻りしない)

confirmed になった注文は status に関係なく「キャンセル済み」として扱う。
ストアの実装はどちらもここの関数で遷移の可否を判定する。
"""

from collections.abc import Iterable
from datetime import datetime
from uuid import uuid4

from .errors import CancellationConflict, ValidationFailed
from .models import (
    Buyer,
    CancelRequest,
    CancelStatus,
    Identity,
    Order,
    OrderLine,
    OrderStatus,
)

MIN_QUANTITY = 1
MAX_QUANTITY = 99
MIN_REASON_LENGTH = 5
MAX_REASON_LENGTH = 600

# 購入者本人が設定できる status
BUYER_STATUSES = frozenset({OrderStatus.PROCESS, OrderStatus.ERROR})


# ── 作成 ─────────────────────────────────────────


def validate_quantity(quantity: int) -> None:
    if not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
        raise ValidationFailed(
            f"Quantity must be between {MIN_QUANTITY} and {MAX_QUANTITY}."
        )


def validate_lines(lines: list[OrderLine]) -> None:
    if not lines:
        raise ValidationFailed("An order needs at least one item.")
    for line in lines:
        validate_quantity(line.quantity)
        if line.unit_price < 0:
            raise ValidationFailed("Unit price must not be negative.")


def order_total(lines: Iterable[OrderLine]) -> int:
    return sum(line.subtotal for line in lines)


def new_order(buyer: Buyer, lines: list[OrderLine], now: datetime) -> Order:
    """検証済みの新規注文を組み立てる。永続化はしない。"""
    validate_lines(lines)
    return Order(
        id=str(uuid4()),
        buyer=buyer,
        lines=list(lines),
        total=order_total(lines),
        status=OrderStatus.NEW,
        cancel_request=CancelRequest(),
        created_at=now,
        updated_at=now,
    )


# ── 認可 ─────────────────────────────────────────


def is_owner(order: Order, identity: Identity) -> bool:
    return bool(identity.email) and (
        order.buyer.email.lower() == identity.email.lower()
    )


def can_access(order: Order, identity: Identity) -> bool:
    return identity.is_admin or is_owner(order, identity)


# ── キャンセル状態機械 ────────────────────────────


def normalize_reason(reason: str) -> str:
    reason = (reason or "").strip()
    if len(reason) < MIN_REASON_LENGTH:
        raise ValidationFailed(
            f"Cancellation reason must be at least {MIN_REASON_LENGTH} characters."
        )
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationFailed(
            f"Cancellation reason must be at most {MAX_REASON_LENGTH} characters."
        )
    return reason


def ensure_cancellation_requestable(order: Order) -> None:
    # requested 中の再申請は理由と日時の上書きとして許可する
    if order.cancel_request.status == CancelStatus.CONFIRMED:
        raise CancellationConflict(
            "This order was already cancelled after admin confirmation."
        )


def ensure_cancellation_confirmable(order: Order) -> None:
    if order.cancel_request.status != CancelStatus.REQUESTED:
        raise CancellationConflict(
            "This order has no active cancellation request."
        )


# ── 遷移の適用 (ドキュメントストアの compare-and-set 用) ──


def parse_status(value: OrderStatus | str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationFailed(f"Unknown status: {value}") from None


def apply_status(order: Order, status: OrderStatus, now: datetime) -> Order:
    return order.model_copy(update={"status": status, "updated_at": now})


def apply_cancel_requested(order: Order, reason: str, now: datetime) -> Order:
    ensure_cancellation_requestable(order)
    cancel = CancelRequest(
        status=CancelStatus.REQUESTED,
        reason=reason,
        requested_at=now,
    )
    return order.model_copy(update={"cancel_request": cancel, "updated_at": now})


def apply_cancel_confirmed(order: Order, now: datetime) -> Order:
    ensure_cancellation_confirmable(order)
    cancel = order.cancel_request.model_copy(
        update={"status": CancelStatus.CONFIRMED, "confirmed_at": now}
    )
    return order.model_copy(update={"cancel_request": cancel, "updated_at": now})
