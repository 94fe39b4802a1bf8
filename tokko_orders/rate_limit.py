"""
レート制限 — 固定ウィンドウ方式

(action, クライアントアドレス) ごとにカウンタを持ち、
ウィンドウが切れたら 1 から数え直す。

ウィンドウ境界をまたぐバーストでは名目レートの約2倍まで通りうるが、
メモリ O(キー数)・タイマースレッドなしと引き換えの割り切り。
"""

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """
    プロセスに1つだけ作り、リクエストハンドラへ注入して使う。

    check は1つのロックの中でパージ → 判定 → 加算を行うので、
    同じキーへの同時リクエストでもカウントは壊れない。
    """

    def __init__(
        self,
        max_keys: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_keys = max_keys
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def check(
        self,
        action: str,
        client: str,
        limit: int,
        window_seconds: float,
    ) -> RateLimitDecision:
        key = f"{action}:{client}"
        with self._lock:
            now = self._clock()
            self._compact(now)

            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                self._windows[key] = _Window(count=1, reset_at=now + window_seconds)
                return RateLimitDecision(allowed=True)

            window.count += 1
            if window.count > limit:
                retry_after = max(1, math.ceil(window.reset_at - now))
                return RateLimitDecision(allowed=False, retry_after=retry_after)
            return RateLimitDecision(allowed=True)

    def count(self, action: str, client: str) -> int:
        window = self._windows.get(f"{action}:{client}")
        return window.count if window else 0

    def _compact(self, now: float) -> None:
        expired = [key for key, w in self._windows.items() if w.reset_at <= now]
        for key in expired:
            del self._windows[key]

        # それでも多すぎる場合は古い順に捨てる (制限が緩くなるだけで誤判定はしない)
        overflow = len(self._windows) - self.max_keys
        if overflow > 0:
            for key in list(self._windows)[:overflow]:
                del self._windows[key]


def client_address(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or "unknown"
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
