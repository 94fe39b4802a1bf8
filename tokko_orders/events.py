"""
ライフサイクルイベント定義

イベントは永続化しない。状態遷移のたびに組み立てて
ディスパッチャに渡し、各シンクへ配信する。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .models import Identity, Order, utcnow


class EventKind(str, Enum):
    ORDER_CREATED = "order_created"
    STATUS_CHANGED = "status_changed"
    CANCEL_REQUESTED = "cancel_requested"
    CANCEL_CONFIRMED = "cancel_confirmed"
    ORDER_DELETED = "order_deleted"
    USER_ACCESS = "user_access"


class Actor(BaseModel):
    name: str
    email: str = "-"
    phone: str = "-"

    @classmethod
    def of(cls, identity: Identity) -> "Actor":
        return cls(
            name=identity.display_name,
            email=identity.email or "-",
            phone=identity.phone or "-",
        )


class LifecycleEvent(BaseModel):
    """注文まわりで起きた事実"""
    kind: EventKind
    actor: Actor
    description: str
    metadata: list[str] = Field(default_factory=list)
    order: Order | None = None
    occurred_at: datetime = Field(default_factory=utcnow)


def format_rupiah(amount: int) -> str:
    # id-ID ロケールの桁区切り (10000 → "Rp 10.000")
    return "Rp " + f"{amount:,}".replace(",", ".")


def order_created(order: Order, actor: Actor) -> LifecycleEvent:
    metadata = [
        f"Order ID: {order.id}",
        f"Total: {format_rupiah(order.total)}",
        "Products:",
    ]
    metadata += [
        f"{index}. {line.name} x{line.quantity} @ {format_rupiah(line.unit_price)}"
        for index, line in enumerate(order.lines, start=1)
    ]
    return LifecycleEvent(
        kind=EventKind.ORDER_CREATED,
        actor=actor,
        description=f"Order {order.id} created ({len(order.lines)} item).",
        metadata=metadata,
        order=order,
    )


def status_changed(order: Order, actor: Actor) -> LifecycleEvent:
    return LifecycleEvent(
        kind=EventKind.STATUS_CHANGED,
        actor=actor,
        description=f"Order {order.id} status set to {order.status.value}.",
        metadata=[f"Order ID: {order.id}", f"Status: {order.status.value}"],
        order=order,
    )


def cancel_requested(order: Order, actor: Actor) -> LifecycleEvent:
    return LifecycleEvent(
        kind=EventKind.CANCEL_REQUESTED,
        actor=actor,
        description=f"Cancellation requested for order {order.id}.",
        metadata=[
            f"Order ID: {order.id}",
            f"Reason: {order.cancel_request.reason}",
        ],
        order=order,
    )


def cancel_confirmed(order: Order, actor: Actor) -> LifecycleEvent:
    return LifecycleEvent(
        kind=EventKind.CANCEL_CONFIRMED,
        actor=actor,
        description=f"Admin confirmed cancellation of order {order.id}.",
        metadata=[
            f"Order ID: {order.id}",
            f"Buyer: {order.buyer.name}",
            f"Email: {order.buyer.email}",
        ],
        order=order,
    )


def order_deleted(order_id: str, actor: Actor) -> LifecycleEvent:
    return LifecycleEvent(
        kind=EventKind.ORDER_DELETED,
        actor=actor,
        description=f"Order {order_id} deleted.",
        metadata=[f"Order ID: {order_id}"],
    )


def user_access(path: str, actor: Actor) -> LifecycleEvent:
    return LifecycleEvent(
        kind=EventKind.USER_ACCESS,
        actor=actor,
        description=f"User opened page {path}.",
        metadata=[f"Path: {path}"],
    )
