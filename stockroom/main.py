"""
Stockroom — FastAPI エントリーポイント

在庫引き当て・解放・調整の API。起動:
    uvicorn --factory stockroom.main:create_app

create_app がコンポジションルート。lifespan の中ですべての依存を組み立て、
終了時に逆順で閉じる。

┌────────────┐  rate limit  ┌──────────┐ lock + tx ┌────┐
│   Client   │ ───────────▶ │ Handlers │ ────────▶ │ DB │
└────────────┘              └────┬─────┘  Ledger   └────┘
                                 │ publish (inventory_events) ──▶ Redis
                                 └ background ──▶ Webhook (retry + backoff)
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from .commands import ReserveItem
from .config import Settings
from .errors import AppError, ErrorCode, ERROR_MESSAGES
from .events import EventPublisher
from .ledger import InventoryLedger
from .locks import KeyedLocks
from .notifier import WebhookNotifier
from .ratelimit import RateLimiter, RateLimiterStore
from .tables import create_schema
from .webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class ReserveItemRequest(BaseModel):
    product_variant_id: int = Field(gt=0)
    quantity: int = Field(gt=0)


class ReserveRequest(BaseModel):
    order_id: int = Field(gt=0)
    items: list[ReserveItemRequest] = Field(min_length=1)


class AdjustRequest(BaseModel):
    product_variant_id: int = Field(gt=0)
    quantity_change: int
    reason: str = Field(min_length=1)
    created_by_id: int | None = None


# ── Dependencies ─────────────────────────────────


def get_ledger(request: Request) -> InventoryLedger:
    return request.app.state.ledger


def get_notifier(request: Request) -> WebhookNotifier | None:
    return request.app.state.notifier


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def ok(data: Any) -> dict:
    return {"success": True, "data": data}


# ── Inventory Endpoints ──────────────────────────


def build_inventory_router(limiter: RateLimiter) -> APIRouter:
    router = APIRouter(dependencies=[Depends(limiter)])

    @router.get("/stores/{store_id}/inventory/variants/{variant_id}")
    async def get_inventory(
        store_id: int,
        variant_id: int,
        ledger: InventoryLedger = Depends(get_ledger),
    ):
        """在庫状況と有効な引き当て一覧"""
        stock_level = await ledger.get_stock_level(variant_id)
        reservations = await ledger.get_variant_reservations(variant_id)
        return ok({"stock_level": stock_level, "active_reservations": reservations})

    @router.post("/stores/{store_id}/inventory/reserve", status_code=201)
    async def reserve_stock(
        store_id: int,
        req: ReserveRequest,
        background_tasks: BackgroundTasks,
        ledger: InventoryLedger = Depends(get_ledger),
        notifier: WebhookNotifier | None = Depends(get_notifier),
    ):
        """注文の在庫引き当て (全明細成功か、すべて取り消し)"""
        reservations = await ledger.reserve_stock(
            req.order_id,
            [ReserveItem(i.product_variant_id, i.quantity) for i in req.items],
            store_id,
        )
        if notifier:
            background_tasks.add_task(
                notifier.notify,
                "inventory.reserved",
                {
                    "order_id": req.order_id,
                    "reservations": [r.model_dump(mode="json") for r in reservations],
                },
                {"store_id": store_id},
            )
        return ok(
            {
                "reservations": reservations,
                "message": f"Successfully reserved stock for {len(reservations)} items",
            }
        )

    @router.post("/stores/{store_id}/inventory/release/{reservation_id}")
    async def release_reservation(
        store_id: int,
        reservation_id: int,
        background_tasks: BackgroundTasks,
        ledger: InventoryLedger = Depends(get_ledger),
        notifier: WebhookNotifier | None = Depends(get_notifier),
    ):
        """引き当ての解放 (注文キャンセル)。二重解放はエラー"""
        reservation = await ledger.release_reservation(reservation_id, store_id)
        if notifier:
            background_tasks.add_task(
                notifier.notify,
                "inventory.released",
                {"reservation": reservation.model_dump(mode="json")},
                {"store_id": store_id},
            )
        return ok({"message": f"Reservation {reservation_id} has been released"})

    @router.post("/stores/{store_id}/inventory/adjust")
    async def adjust_inventory(
        store_id: int,
        req: AdjustRequest,
        background_tasks: BackgroundTasks,
        ledger: InventoryLedger = Depends(get_ledger),
        notifier: WebhookNotifier | None = Depends(get_notifier),
        settings: Settings = Depends(get_settings),
    ):
        """実在庫の手動調整 (管理者用)"""
        stock_level = await ledger.adjust_stock(
            req.product_variant_id,
            store_id,
            req.quantity_change,
            req.reason,
            req.created_by_id,
        )
        if notifier:
            background_tasks.add_task(
                notifier.notify,
                "inventory.adjusted",
                {
                    "quantity_change": req.quantity_change,
                    "reason": req.reason,
                    "stock_level": stock_level.model_dump(),
                },
                {"store_id": store_id},
            )
            if stock_level.available_stock <= settings.low_stock_threshold:
                background_tasks.add_task(
                    notifier.notify,
                    "inventory.low_stock",
                    {"stock_level": stock_level.model_dump()},
                    {"store_id": store_id},
                )
        return ok(
            {
                "stock_level": stock_level,
                "message": f"Inventory adjusted by {req.quantity_change} units",
            }
        )

    @router.get("/stores/{store_id}/inventory/movements")
    async def get_movements(
        store_id: int,
        variant_id: int = Query(gt=0),
        limit: int = Query(50, ge=1, le=500),
        ledger: InventoryLedger = Depends(get_ledger),
    ):
        """在庫移動履歴 (新しい順)"""
        movements = await ledger.get_movement_history(variant_id, store_id, limit)
        return ok({"movements": movements, "count": len(movements)})

    @router.get("/stores/{store_id}/inventory/low-stock")
    async def check_low_stock(
        store_id: int,
        threshold: int | None = Query(None, ge=0),
        ledger: InventoryLedger = Depends(get_ledger),
        settings: Settings = Depends(get_settings),
    ):
        """在庫僅少バリアント一覧"""
        if threshold is None:
            threshold = settings.low_stock_threshold
        items = await ledger.check_low_stock(store_id, threshold)
        return ok({"low_stock_items": items, "count": len(items), "threshold": threshold})

    @router.get("/orders/{order_id}/reservations")
    async def get_order_reservations(
        order_id: int,
        ledger: InventoryLedger = Depends(get_ledger),
    ):
        """注文の引き当て一覧 (解放済みを含む)"""
        reservations = await ledger.get_order_reservations(order_id)
        return ok({"reservations": reservations, "count": len(reservations)})

    return router


# ── Error Handlers ───────────────────────────────


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
        headers=exc.headers or None,
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.VALIDATION_FAILED.value,
                "message": ERROR_MESSAGES[ErrorCode.VALIDATION_FAILED],
                "context": {"errors": errors},
            },
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": ERROR_MESSAGES[ErrorCode.INTERNAL_ERROR],
                "suggestion": "Please try again later or contact support if the problem persists",
            },
        },
    )


# ── Composition Root ─────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    rate_limit_store = RateLimiterStore()
    limiter = RateLimiter(
        rate_limit_store,
        max_tokens=settings.rate_limit_max_tokens,
        refill_rate=settings.rate_limit_refill_rate,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        if settings.create_schema:
            await create_schema(engine)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)

        redis_pool = None
        publisher = None
        if settings.redis_url:
            redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
            publisher = EventPublisher(redis_pool)

        client = http_client or httpx.AsyncClient()
        notifier = None
        if settings.webhook_url:
            dispatcher = WebhookDispatcher(settings.webhook_retry, client=client)
            notifier = WebhookNotifier(dispatcher, settings.webhook_url)

        app.state.settings = settings
        app.state.ledger = InventoryLedger(session_factory, KeyedLocks(), publisher)
        app.state.notifier = notifier
        app.state.rate_limit_store = rate_limit_store

        rate_limit_store.start()
        logger.info("Stockroom started (webhooks=%s, events=%s)", bool(notifier), bool(publisher))
        try:
            yield
        finally:
            await rate_limit_store.shutdown()
            if http_client is None:
                await client.aclose()
            if redis_pool is not None:
                await redis_pool.aclose()
            await engine.dispose()
            logger.info("Stockroom stopped")

    app = FastAPI(title="Stockroom - Inventory Service", lifespan=lifespan)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(build_inventory_router(limiter))

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "stockroom"}

    return app
