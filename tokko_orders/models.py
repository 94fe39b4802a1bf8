"""
データモデル

注文は作成時点の購入者・商品のスナップショットを持つ。
後から商品やプロフィールが変わっても、過去の注文は変わらない。
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def truncate_millis(value: datetime) -> datetime:
    # DB にはミリ秒で保存するので、返す値もそれに揃える
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class OrderStatus(str, Enum):
    NEW = "new"
    PROCESS = "process"
    DONE = "done"
    ERROR = "error"


class CancelStatus(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    CONFIRMED = "confirmed"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Identity(BaseModel):
    """認証済みリクエストの呼び出し元"""
    user_id: str
    role: Role = Role.USER
    email: str
    name: str = ""
    phone: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def display_name(self) -> str:
        return self.name or "User"


class Buyer(BaseModel):
    user_id: str
    name: str
    email: str
    phone: str = ""

    @classmethod
    def from_identity(cls, identity: Identity) -> "Buyer":
        return cls(
            user_id=identity.user_id,
            name=identity.display_name,
            email=identity.email or "-",
            phone=identity.phone,
        )


class Product(BaseModel):
    """カタログから引いた現在の商品"""
    id: str
    name: str
    duration: str = ""
    unit_price: int
    is_active: bool = True


class OrderLine(BaseModel):
    product_id: str
    name: str
    duration: str = ""
    quantity: int
    unit_price: int

    @property
    def subtotal(self) -> int:
        return self.unit_price * self.quantity

    @classmethod
    def snapshot(cls, product: Product, quantity: int) -> "OrderLine":
        return cls(
            product_id=product.id,
            name=product.name,
            duration=product.duration,
            quantity=quantity,
            unit_price=product.unit_price,
        )


class CancelRequest(BaseModel):
    status: CancelStatus = CancelStatus.NONE
    reason: str = ""
    requested_at: datetime | None = None
    confirmed_at: datetime | None = None


class Order(BaseModel):
    id: str
    buyer: Buyer
    lines: list[OrderLine]
    total: int
    status: OrderStatus = OrderStatus.NEW
    cancel_request: CancelRequest = Field(default_factory=CancelRequest)
    created_at: datetime
    updated_at: datetime

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_request.status == CancelStatus.CONFIRMED


class OrderSummary(BaseModel):
    """管理画面の一覧用(明細なし)"""
    id: str
    user_name: str
    user_email: str
    user_phone: str
    total: int
    status: OrderStatus
    cancel_status: CancelStatus
    created_at: datetime

    @classmethod
    def of(cls, order: Order) -> "OrderSummary":
        return cls(
            id=order.id,
            user_name=order.buyer.name,
            user_email=order.buyer.email,
            user_phone=order.buyer.phone,
            total=order.total,
            status=order.status,
            cancel_status=order.cancel_request.status,
            created_at=order.created_at,
        )
