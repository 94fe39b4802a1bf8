"""
イベントファンアウト

1つのライフサイクルイベントを、購読している全シンクへ並列に配信する。

    ┌───────────────┐          ┌──────────────┐
    │ OrderService  │─ event ─▶│  Dispatcher  │──▶ LedgerSink   (CSV)
    └───────────────┘          │  gather()    │──▶ ChatAlertSink (Telegram)
                               └──────────────┘──▶ MetricsSink  (Redis)

- 各シンクは独立したタスクとして動き、個別のタイムアウトを持つ
- 全シンクの完了(成功・失敗とも)を待ってから返る
- 失敗はログに残すだけで呼び出し元には伝播しない
  (注文はディスパッチ前にすでに確定している)
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from .events import EventKind, LifecycleEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    name: str
    # None なら全イベントを受け取る
    kinds: frozenset[EventKind] | None

    async def handle(self, event: LifecycleEvent) -> None: ...


@dataclass(frozen=True)
class SinkOutcome:
    sink: str
    ok: bool
    error: str | None = None


class EventDispatcher:
    def __init__(self, sinks: Iterable[EventSink], timeout: float = 5.0) -> None:
        self.sinks = list(sinks)
        self.timeout = timeout

    def sinks_for(self, event: LifecycleEvent) -> list[EventSink]:
        return [
            sink for sink in self.sinks
            if sink.kinds is None or event.kind in sink.kinds
        ]

    async def dispatch(self, event: LifecycleEvent) -> list[SinkOutcome]:
        """全シンクの完了を待つ。例外は投げない。"""
        sinks = self.sinks_for(event)
        if not sinks:
            return []

        outcomes = await asyncio.gather(*(self._run(sink, event) for sink in sinks))
        failed = [o.sink for o in outcomes if not o.ok]
        if failed:
            logger.warning(
                "Dispatched %s with %d/%d sink failures: %s",
                event.kind.value, len(failed), len(outcomes), ", ".join(failed),
            )
        else:
            logger.info("Dispatched %s to %d sinks", event.kind.value, len(outcomes))
        return list(outcomes)

    async def _run(self, sink: EventSink, event: LifecycleEvent) -> SinkOutcome:
        try:
            await asyncio.wait_for(sink.handle(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Sink %s timed out after %.1fs on %s",
                sink.name, self.timeout, event.kind.value,
            )
            return SinkOutcome(sink=sink.name, ok=False, error="timeout")
        except Exception as exc:
            logger.exception("Sink %s failed on %s", sink.name, event.kind.value)
            return SinkOutcome(sink=sink.name, ok=False, error=repr(exc))
        return SinkOutcome(sink=sink.name, ok=True)
