"""
Stockroom — イベント定義と発行

在庫ドメインで発生するイベント。コミット後に Redis の inventory_events
チャネルへ {"event_type": ..., "data": {...}} の形で発行する。

注意: Redis Pub/Sub は fire-and-forget。発行に失敗しても
コミット済みの在庫操作は取り消さない (ログだけ残す)。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL = "inventory_events"


class StockReserved(BaseModel):
    """注文に対して在庫が引き当てられた"""
    order_id: int
    store_id: int
    reservation_ids: list[int]
    items: list[dict]
    timestamp: datetime


class ReservationReleased(BaseModel):
    """引き当てが解放された (注文キャンセル)"""
    reservation_id: int
    order_id: int
    product_variant_id: int
    store_id: int
    quantity: int
    timestamp: datetime


class StockAdjusted(BaseModel):
    """管理者が実在庫を増減した"""
    product_variant_id: int
    store_id: int
    quantity_change: int
    new_stock: int
    reason: str
    timestamp: datetime


class EventPublisher:
    """ドメインイベントを Redis に発行する。"""

    def __init__(self, redis: aioredis.Redis, channel: str = CHANNEL):
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        message = json.dumps(
            {
                "event_type": type(event).__name__,
                "data": event.model_dump(mode="json"),
            },
            default=str,
        )
        try:
            await self.redis.publish(self.channel, message)
        except RedisError:
            logger.exception("Failed to publish %s", type(event).__name__)
