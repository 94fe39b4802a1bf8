"""
設定 — 環境変数から読み込む

各コンポーネントは起動時に一度だけ Settings を受け取る。
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # ストアのバックエンド: "sql" (ローカル DB) または "redis" (ドキュメントストア)
    store_backend: str = "sql"
    database_url: str = "sqlite+aiosqlite:///./tokko.db"
    redis_url: str = "redis://localhost:6379"

    # 未設定ならメトリクスシンクは何もしない
    metrics_redis_url: str | None = None

    # 設定されていれば HTTP 経由でカタログを引く
    catalog_service_url: str | None = None

    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    telegram_api_url: str = "https://api.telegram.org"
    alert_timezone: str | None = None

    ledger_path: str = "storage/exports/orders.csv"
    sink_timeout: float = 5.0

    order_rate_limit: int = 20
    order_rate_window: int = 60
    rate_limit_max_keys: int = 5000

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        def opt(name: str) -> str | None:
            return environ.get(name) or None

        return cls(
            store_backend=environ.get("STORE_BACKEND", "sql").lower(),
            database_url=environ.get("DATABASE_URL", cls.database_url),
            redis_url=environ.get("REDIS_URL", cls.redis_url),
            metrics_redis_url=opt("METRICS_REDIS_URL"),
            catalog_service_url=opt("CATALOG_SERVICE_URL"),
            telegram_bot_token=opt("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=opt("TELEGRAM_CHAT_ID"),
            telegram_api_url=environ.get("TELEGRAM_API_URL", cls.telegram_api_url),
            alert_timezone=opt("ALERT_TIMEZONE"),
            ledger_path=environ.get("LEDGER_PATH", cls.ledger_path),
            sink_timeout=float(environ.get("SINK_TIMEOUT", cls.sink_timeout)),
            order_rate_limit=int(environ.get("ORDER_RATE_LIMIT", cls.order_rate_limit)),
            order_rate_window=int(environ.get("ORDER_RATE_WINDOW", cls.order_rate_window)),
            rate_limit_max_keys=int(
                environ.get("RATE_LIMIT_MAX_KEYS", cls.rate_limit_max_keys)
            ),
            log_level=environ.get("LOG_LEVEL", cls.log_level).upper(),
        )
