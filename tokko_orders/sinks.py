"""
通知シンク

ディスパッチャから呼ばれる下流の受け手。どれもベストエフォートで、
設定がなければ黙って何もしない。失敗時は例外をそのまま投げ、
隔離とログはディスパッチャ側で行う。

    LedgerSink     order_created のみ  明細1行ごとに CSV へ追記
    ChatAlertSink  全イベント          Telegram へテキスト通知 (再送なし)
    MetricsSink    order_created のみ  Redis の直近イベントリストとカウンタ
"""

import asyncio
import csv
import json
import logging
import threading
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo

import httpx
import redis.asyncio as aioredis

from .events import EventKind, LifecycleEvent

logger = logging.getLogger(__name__)

LEDGER_HEADER = (
    "order_id",
    "created_at",
    "user_name",
    "user_email",
    "user_phone",
    "product_name",
    "quantity",
    "unit_price",
    "order_total",
)

METRICS_EVENTS_KEY = "orders:events"
METRICS_COUNT_KEY = "orders:count"
METRICS_EVENTS_CAP = 200

ORDER_EVENTS = frozenset({EventKind.ORDER_CREATED})


class LedgerSink:
    """追記専用の注文台帳 (CSV)"""

    name = "ledger"
    kinds = ORDER_EVENTS

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    async def handle(self, event: LifecycleEvent) -> None:
        order = event.order
        if order is None:
            return
        rows = [
            (
                order.id,
                order.created_at.isoformat(),
                order.buyer.name,
                order.buyer.email,
                order.buyer.phone,
                line.name,
                line.quantity,
                line.unit_price,
                order.total,
            )
            for line in order.lines
        ]
        await asyncio.to_thread(self._append, rows)

    def _append(self, rows: list[tuple]) -> None:
        # 同一プロセス内の追記は直列化する (行が混ざらないように)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_header = not self.path.exists() or self.path.stat().st_size == 0
            with self.path.open("a", newline="", encoding="utf-8") as f:
                writer = csv.writer(f, lineterminator="\n")
                if write_header:
                    writer.writerow(LEDGER_HEADER)
                writer.writerows(rows)
        logger.debug("Appended %d ledger rows to %s", len(rows), self.path)


class ChatAlertSink:
    """Telegram Bot API へのアクティビティ通知"""

    name = "chat_alert"
    kinds = None

    def __init__(
        self,
        bot_token: str | None,
        chat_id: str | None,
        api_url: str = "https://api.telegram.org",
        timezone: str | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_url = api_url.rstrip("/")
        self.tz: tzinfo | None = ZoneInfo(timezone) if timezone else None
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def render(self, event: LifecycleEvent) -> str:
        # tz が None ならサーバのローカルタイムゾーン
        occurred = event.occurred_at.astimezone(self.tz)
        lines = [
            f"[{event.kind.value}]",
            f"Time: {occurred.strftime('%Y-%m-%d %H:%M:%S %Z')}",
            f"Actor: {event.actor.name}",
            f"Email: {event.actor.email or '-'}",
            f"Phone: {event.actor.phone or '-'}",
            "",
            event.description,
        ]
        if event.metadata:
            lines += ["", *event.metadata]
        return "\n".join(lines)

    async def handle(self, event: LifecycleEvent) -> None:
        if not self.configured:
            return
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            resp = await client.post(
                f"{self.api_url}/bot{self.bot_token}/sendMessage",
                json={"chat_id": self.chat_id, "text": self.render(event)},
            )
            resp.raise_for_status()


class MetricsSink:
    """直近 200 件のイベントと累計カウンタを Redis に積む"""

    name = "metrics"
    kinds = ORDER_EVENTS

    def __init__(self, redis: aioredis.Redis | None) -> None:
        self.redis = redis

    async def handle(self, event: LifecycleEvent) -> None:
        if self.redis is None or event.order is None:
            return
        order = event.order
        record = json.dumps({
            "order_id": order.id,
            "total": order.total,
            "user_email": order.buyer.email,
            "created_at": order.created_at.isoformat(),
        })
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.lpush(METRICS_EVENTS_KEY, record)
            pipe.ltrim(METRICS_EVENTS_KEY, 0, METRICS_EVENTS_CAP - 1)
            pipe.incr(METRICS_COUNT_KEY)
            await pipe.execute()
