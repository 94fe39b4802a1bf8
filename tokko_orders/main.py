"""
Tokko Orders — FastAPI エントリーポイント

注文の作成・参照・状態遷移・キャンセルを HTTP API として公開する。
各コンポーネントは lifespan で一度だけ組み立て、app.state に載せる。

┌────────┐  POST /orders  ┌──────────────┐   ┌──────────────┐   ┌────────────┐
│ Client │──────────────▶│ Rate Limiter │──▶│ OrderService │──▶│ OrderStore │
└────────┘                └──────────────┘   └──────┬───────┘   └────────────┘
                                                    │ dispatch
                                             ┌──────▼───────┐
                                             │  Dispatcher  │──▶ ledger / chat / metrics
                                             └──────────────┘
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import create_async_engine

from . import queries
from .auth import admin_identity, current_identity
from .catalog import HttpCatalog, SqlCatalog
from .config import Settings
from .dispatcher import EventDispatcher
from .errors import OrderError, RateLimited
from .models import Identity, OrderStatus
from .order_store import OrderStore, build_order_store
from .orchestrator import OrderService, RequestedLine
from .rate_limit import FixedWindowRateLimiter, client_address
from .sinks import ChatAlertSink, LedgerSink, MetricsSink

logger = logging.getLogger(__name__)

ORDER_LIST_LIMIT = 50
ADMIN_LIST_LIMIT = 100
EXPORT_LIMIT = 1000
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int


class PlaceOrderRequest(BaseModel):
    items: list[OrderItemRequest]


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


class CancelRequestBody(BaseModel):
    reason: str


class AccessRequest(BaseModel):
    path: str


# ── Dependencies ─────────────────────────────────


def get_service(request: Request) -> OrderService:
    return request.app.state.orders


def get_store(request: Request) -> OrderStore:
    return request.app.state.store


def enforce_order_rate_limit(request: Request) -> None:
    settings: Settings = request.app.state.settings
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    decision = limiter.check(
        "create-order",
        client_address(request),
        settings.order_rate_limit,
        settings.order_rate_window,
    )
    if not decision.allowed:
        raise RateLimited("Too many requests. Try again later.", decision.retry_after)


# ── Application ──────────────────────────────────


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings.from_env()
        engine = create_async_engine(cfg.database_url, echo=False)
        store_redis = None
        metrics_redis = None

        try:
            if cfg.store_backend == "redis":
                store_redis = aioredis.from_url(cfg.redis_url, decode_responses=True)
            if cfg.metrics_redis_url:
                metrics_redis = aioredis.from_url(
                    cfg.metrics_redis_url, decode_responses=True
                )

            store = build_order_store(cfg, engine, store_redis)
            await store.init()

            if cfg.catalog_service_url:
                catalog = HttpCatalog(cfg.catalog_service_url)
            else:
                catalog = SqlCatalog(engine)
                await catalog.init()

            dispatcher = EventDispatcher(
                [
                    LedgerSink(cfg.ledger_path),
                    ChatAlertSink(
                        cfg.telegram_bot_token,
                        cfg.telegram_chat_id,
                        api_url=cfg.telegram_api_url,
                        timezone=cfg.alert_timezone,
                        timeout=cfg.sink_timeout,
                    ),
                    MetricsSink(metrics_redis),
                ],
                timeout=cfg.sink_timeout,
            )

            app.state.settings = cfg
            app.state.store = store
            app.state.orders = OrderService(store, catalog, dispatcher)
            app.state.rate_limiter = FixedWindowRateLimiter(
                max_keys=cfg.rate_limit_max_keys
            )
            logger.info("Order service started (store=%s)", cfg.store_backend)

            yield
        finally:
            # 起動途中で失敗した場合も、作った接続は必ず閉じる
            if metrics_redis is not None:
                await metrics_redis.aclose()
            if store_redis is not None:
                await store_redis.aclose()
            await engine.dispose()

    app = FastAPI(title="Tokko Order Service", lifespan=lifespan)

    @app.exception_handler(OrderError)
    async def handle_order_error(request: Request, exc: OrderError):
        headers = None
        if isinstance(exc, RateLimited):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            {"message": exc.message}, status_code=exc.status_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid input.") if errors else "Invalid input."
        return JSONResponse({"message": message}, status_code=400)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # ── 注文 (購入者 / 管理者) ───────────────────

    @app.post(
        "/orders",
        status_code=201,
        dependencies=[Depends(enforce_order_rate_limit)],
    )
    async def place_order(
        req: PlaceOrderRequest,
        identity: Identity = Depends(current_identity),
        service: OrderService = Depends(get_service),
    ):
        """注文作成。シンクの結果に関係なく、保存できた時点で 201 を返す。"""
        order = await service.place_order(
            identity,
            [RequestedLine(item.product_id, item.quantity) for item in req.items],
        )
        return {"message": "Order created.", "order": order}

    @app.get("/orders")
    async def list_orders(
        identity: Identity = Depends(current_identity),
        store: OrderStore = Depends(get_store),
    ):
        orders = await queries.list_visible_orders(store, identity, ORDER_LIST_LIMIT)
        return {"orders": orders}

    @app.get("/orders/{order_id}")
    async def get_order(
        order_id: str,
        identity: Identity = Depends(current_identity),
        service: OrderService = Depends(get_service),
    ):
        return {"order": await service.get_order(identity, order_id)}

    @app.patch("/orders/{order_id}/status")
    async def set_status(
        order_id: str,
        req: UpdateStatusRequest,
        identity: Identity = Depends(current_identity),
        service: OrderService = Depends(get_service),
    ):
        return {"order": await service.set_status(identity, order_id, req.status)}

    @app.patch("/orders/{order_id}/cancel-request")
    async def request_cancellation(
        order_id: str,
        req: CancelRequestBody,
        identity: Identity = Depends(current_identity),
        service: OrderService = Depends(get_service),
    ):
        order = await service.request_cancellation(identity, order_id, req.reason)
        return {"order": order}

    @app.patch("/orders/{order_id}/cancel-request/confirm")
    async def confirm_cancellation(
        order_id: str,
        identity: Identity = Depends(current_identity),
        service: OrderService = Depends(get_service),
    ):
        return {"order": await service.confirm_cancellation(identity, order_id)}

    @app.delete("/orders/{order_id}")
    async def delete_order(
        order_id: str,
        identity: Identity = Depends(current_identity),
        service: OrderService = Depends(get_service),
    ):
        await service.delete_order(identity, order_id)
        return {"message": "Order deleted."}

    # ── 管理画面 ─────────────────────────────────

    @app.get("/admin/orders")
    async def admin_list_orders(
        _: Identity = Depends(admin_identity),
        store: OrderStore = Depends(get_store),
    ):
        orders = await store.list_orders(ADMIN_LIST_LIMIT)
        return {"orders": queries.order_summaries(orders)}

    @app.get("/admin/orders/export")
    async def admin_export_orders(
        export_format: str = Query("csv", alias="format"),
        _: Identity = Depends(admin_identity),
        store: OrderStore = Depends(get_store),
    ):
        """format=xlsx でワークブック、それ以外は CSV。"""
        orders = await store.list_orders(EXPORT_LIMIT)
        if export_format.lower() == "xlsx":
            return Response(
                queries.export_xlsx(orders),
                media_type=XLSX_MEDIA_TYPE,
                headers={"Content-Disposition": 'attachment; filename="orders-export.xlsx"'},
            )
        return Response(
            queries.export_csv(orders),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": 'attachment; filename="orders-export.csv"'},
        )

    @app.get("/admin/stats")
    async def admin_stats(
        hours: int = Query(24, ge=1, le=queries.STATS_MAX_HOURS),
        _: Identity = Depends(admin_identity),
        store: OrderStore = Depends(get_store),
    ):
        series = await queries.order_stats(store, hours=hours)
        latest = await store.list_orders(12)
        return {"series": series, "latest_orders": queries.order_summaries(latest)}

    # ── アクティビティ ───────────────────────────

    @app.post("/activity/access")
    async def record_access(
        req: AccessRequest,
        identity: Identity = Depends(current_identity),
        service: OrderService = Depends(get_service),
    ):
        await service.record_access(identity, req.path)
        return {"message": "Access recorded."}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}


app = create_app()


def run() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("tokko_orders.main:app", host="0.0.0.0", port=8000)
