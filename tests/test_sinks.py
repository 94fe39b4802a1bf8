"""各シンクの出力形式"""

import csv
import json
from datetime import datetime, timezone

import httpx
import pytest

from tokko_orders.aggregate import new_order
from tokko_orders.events import EventKind, format_rupiah
from tokko_orders.sinks import (
    LEDGER_HEADER,
    METRICS_COUNT_KEY,
    METRICS_EVENTS_CAP,
    METRICS_EVENTS_KEY,
    ChatAlertSink,
    LedgerSink,
    MetricsSink,
)

from .factories import make_event, make_line

CREATED = datetime(2026, 10, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def order(buyer):
    return new_order(
        buyer,
        [
            make_line("p-a", "Netflix Premium", quantity=2, unit_price=10000),
            make_line("p-b", 'Disney+ "Hotstar", 1 year', quantity=1, unit_price=5000),
        ],
        CREATED,
    )


def read_rows(path):
    with path.open(newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


# ── Ledger ───────────────────────────────────────


@pytest.mark.asyncio
async def test_ledger_writes_header_once(tmp_path, order):
    path = tmp_path / "exports" / "orders.csv"
    sink = LedgerSink(path)

    await sink.handle(make_event(EventKind.ORDER_CREATED, order))
    await sink.handle(make_event(EventKind.ORDER_CREATED, order))

    rows = read_rows(path)
    assert rows[0] == list(LEDGER_HEADER)
    assert rows.count(list(LEDGER_HEADER)) == 1
    assert len(rows) == 1 + 2 * 2


@pytest.mark.asyncio
async def test_ledger_row_contents_and_quoting(tmp_path, order):
    path = tmp_path / "orders.csv"
    await LedgerSink(path).handle(make_event(EventKind.ORDER_CREATED, order))

    _, first, second = read_rows(path)
    assert first == [
        order.id, CREATED.isoformat(), "Sari", "sari@example.com", "08123456789",
        "Netflix Premium", "2", "10000", "25000",
    ]
    assert second[5] == 'Disney+ "Hotstar", 1 year'
    assert '"Disney+ ""Hotstar"", 1 year"' in path.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_ledger_ignores_events_without_order(tmp_path):
    path = tmp_path / "orders.csv"
    await LedgerSink(path).handle(make_event(EventKind.ORDER_CREATED))
    assert not path.exists()


# ── Chat alert ───────────────────────────────────


@pytest.mark.asyncio
async def test_chat_alert_posts_rendered_message(order):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    sink = ChatAlertSink(
        "123abc", "-100200", api_url="https://chat.test/",
        timezone="Asia/Jakarta", transport=httpx.MockTransport(handler),
    )
    event = make_event(EventKind.ORDER_CREATED, order).model_copy(
        update={"occurred_at": CREATED}
    )

    await sink.handle(event)

    assert len(requests) == 1
    assert str(requests[0].url) == "https://chat.test/bot123abc/sendMessage"
    payload = json.loads(requests[0].content)
    assert payload["chat_id"] == "-100200"
    text = payload["text"]
    assert text.startswith("[order_created]\n")
    assert "Time: 2026-10-01 16:30:00 WIB" in text
    assert "Actor: Sari" in text
    assert "Order ID: x" in text


@pytest.mark.asyncio
async def test_chat_alert_raises_on_http_error(order):
    sink = ChatAlertSink(
        "t", "c", transport=httpx.MockTransport(lambda request: httpx.Response(502)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await sink.handle(make_event(EventKind.STATUS_CHANGED, order))


@pytest.mark.asyncio
async def test_chat_alert_is_noop_when_unconfigured():
    def handler(request):
        raise AssertionError("no request expected")

    sink = ChatAlertSink(None, "-100", transport=httpx.MockTransport(handler))
    assert not sink.configured
    await sink.handle(make_event(EventKind.USER_ACCESS))


def test_rupiah_formatting():
    assert format_rupiah(10000) == "Rp 10.000"
    assert format_rupiah(1250000) == "Rp 1.250.000"
    assert format_rupiah(500) == "Rp 500"


# ── Metrics ──────────────────────────────────────


@pytest.mark.asyncio
async def test_metrics_keeps_latest_events_and_counts(fake_redis, order):
    sink = MetricsSink(fake_redis)
    event = make_event(EventKind.ORDER_CREATED, order)

    for _ in range(METRICS_EVENTS_CAP + 5):
        await sink.handle(event)

    assert await fake_redis.llen(METRICS_EVENTS_KEY) == METRICS_EVENTS_CAP
    assert int(await fake_redis.get(METRICS_COUNT_KEY)) == METRICS_EVENTS_CAP + 5
    latest = json.loads(await fake_redis.lindex(METRICS_EVENTS_KEY, 0))
    assert latest == {
        "order_id": order.id,
        "total": 25000,
        "user_email": "sari@example.com",
        "created_at": CREATED.isoformat(),
    }


@pytest.mark.asyncio
async def test_metrics_is_noop_without_redis(order):
    await MetricsSink(None).handle(make_event(EventKind.ORDER_CREATED, order))
