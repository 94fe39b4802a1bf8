"""
クエリ — 読み取り側

一覧・管理画面の集計・CSV / xlsx エクスポート。
状態は変更しないので OrderService を経由せずストアを直接読む。
"""

import csv
import io
from collections.abc import Iterator
from datetime import datetime, timedelta

from openpyxl import Workbook

from .errors import ValidationFailed
from .models import Identity, Order, OrderSummary, utcnow
from .order_store import OrderStore

EXPORT_HEADER = (
    "no",
    "name",
    "email",
    "product",
    "quantity",
    "duration",
    "day",
    "month",
    "year",
)
EXPORT_SHEET = "orders"
STATS_MAX_HOURS = 24 * 31


async def list_visible_orders(
    store: OrderStore, identity: Identity, limit: int = 50
) -> list[Order]:
    """管理者は全件、それ以外は自分の注文だけ。"""
    if identity.is_admin:
        return await store.list_orders(limit)
    return await store.list_orders(limit, buyer_email=identity.email)


def order_summaries(orders: list[Order]) -> list[OrderSummary]:
    return [OrderSummary.of(order) for order in orders]


async def order_stats(
    store: OrderStore,
    hours: int = 24,
    now: datetime | None = None,
    limit: int = 10000,
) -> list[dict]:
    """
    直近 hours 時間の注文を1時間ごとに集計する。

    管理者確定済みのキャンセルは件数・金額から除き、
    cancelled_orders として別に数える。
    """
    if not 1 <= hours <= STATS_MAX_HOURS:
        raise ValidationFailed(f"hours must be between 1 and {STATS_MAX_HOURS}.")
    now = now or utcnow()
    since = now - timedelta(hours=hours)
    orders = await store.list_orders(limit, since=since)

    buckets: dict[str, dict] = {}
    for order in sorted(orders, key=lambda o: o.created_at):
        bucket = order.created_at.strftime("%Y-%m-%d %H:00")
        current = buckets.setdefault(
            bucket,
            {"bucket": bucket, "total_orders": 0, "total_amount": 0, "cancelled_orders": 0},
        )
        if order.is_cancelled:
            current["cancelled_orders"] += 1
            continue
        current["total_orders"] += 1
        current["total_amount"] += order.total

    return list(buckets.values())


def export_rows(orders: list[Order]) -> Iterator[tuple]:
    """明細1行ごとに1レコード。通し番号は 1 から。"""
    counter = 1
    for order in orders:
        created = order.created_at
        for line in order.lines:
            yield (
                counter,
                order.buyer.name,
                order.buyer.email,
                line.name,
                line.quantity,
                line.duration,
                f"{created.day:02d}",
                f"{created.month:02d}",
                str(created.year),
            )
            counter += 1


def export_csv(orders: list[Order]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    writer.writerows(export_rows(orders))
    return buf.getvalue()


def export_xlsx(orders: list[Order]) -> bytes:
    """CSV と同じ列を "orders" シート1枚のワークブックにする。"""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = EXPORT_SHEET
    sheet.append(EXPORT_HEADER)
    for row in export_rows(orders):
        sheet.append(row)

    buf = io.BytesIO()
    workbook.save(buf)
    return buf.getvalue()
