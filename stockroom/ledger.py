"""
Stockroom — 在庫台帳 (Inventory Ledger)

在庫数と引き当ての整合性を保つ入口。

  ┌──────────────┐  reserve / release / adjust   ┌─────────────┐
  │ API handlers │ ────────────────────────────▶ │   Ledger    │
  └──────────────┘                               │  ├ locks    │──▶ DB (1 tx)
                                                 │  └ publisher│──▶ Redis
                                                 └─────────────┘

書き込み系はバリアント単位のロックを取得してから
「在庫確認 → 行の追加/更新 → 移動ログ → コミット」を 1 トランザクションで行う。
これにより同一バリアントへの同時引き当てが在庫数を超えることはない。
イベント発行はコミット後 (失敗しても操作は取り消さない)。
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import commands, queries
from .commands import ReserveItem
from .errors import InsufficientStockError
from .events import EventPublisher, ReservationReleased, StockAdjusted, StockReserved
from .locks import KeyedLocks
from .models import Movement, Reservation, StockLevel

logger = logging.getLogger(__name__)

DEFAULT_MOVEMENT_LIMIT = 50
DEFAULT_LOW_STOCK_THRESHOLD = 10


class InventoryLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLocks | None = None,
        publisher: EventPublisher | None = None,
    ):
        self.session_factory = session_factory
        self.locks = locks or KeyedLocks()
        self.publisher = publisher

    # ── Read 側 ──────────────────────────────────

    async def get_stock_level(self, variant_id: int) -> StockLevel:
        async with self.session_factory() as session:
            return await queries.get_stock_level(session, variant_id)

    async def get_order_reservations(self, order_id: int) -> list[Reservation]:
        async with self.session_factory() as session:
            return await queries.list_order_reservations(session, order_id)

    async def get_variant_reservations(
        self, variant_id: int, active_only: bool = True
    ) -> list[Reservation]:
        async with self.session_factory() as session:
            return await queries.list_variant_reservations(session, variant_id, active_only)

    async def get_movement_history(
        self, variant_id: int, store_id: int, limit: int = DEFAULT_MOVEMENT_LIMIT
    ) -> list[Movement]:
        async with self.session_factory() as session:
            return await queries.list_movements(session, variant_id, store_id, limit)

    async def check_low_stock(
        self, store_id: int, threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    ) -> list[StockLevel]:
        """
        available_stock が threshold 以下のバリアントを返す。

        バリアントごとに在庫を計算するため O(バリアント数) のクエリになる。
        """
        low: list[StockLevel] = []
        async with self.session_factory() as session:
            for variant_id in await queries.list_variant_ids(session):
                level = await queries.get_stock_level(session, variant_id)
                if level.available_stock <= threshold:
                    low.append(level)
        logger.debug(
            "Low stock check store=%s threshold=%s hits=%d", store_id, threshold, len(low)
        )
        return low

    # ── Write 側 ─────────────────────────────────

    async def reserve_stock(
        self,
        order_id: int,
        items: Iterable[ReserveItem],
        store_id: int,
    ) -> list[Reservation]:
        """
        注文の全明細を引き当てる。

        全明細を 1 トランザクションで処理し、どれか 1 つでも失敗すれば
        すべてロールバックする (部分的な引き当ては残さない)。
        """
        items = list(items)
        variant_ids = [item.product_variant_id for item in items]

        async with self.locks.hold(*variant_ids):
            async with self.session_factory() as session:
                try:
                    async with session.begin():
                        reservations = await commands.reserve_stock(
                            session, order_id, items, store_id
                        )
                except InsufficientStockError as e:
                    logger.info(
                        "Reservation rejected order=%s requested=%s available=%s",
                        order_id,
                        e.requested,
                        e.available,
                    )
                    raise

        logger.info(
            "Reserved stock order=%s store=%s reservations=%s",
            order_id,
            store_id,
            [r.id for r in reservations],
        )
        await self._publish(
            StockReserved(
                order_id=order_id,
                store_id=store_id,
                reservation_ids=[r.id for r in reservations],
                items=[
                    {"product_variant_id": r.product_variant_id, "quantity": r.quantity}
                    for r in reservations
                ],
                timestamp=datetime.now(timezone.utc),
            )
        )
        return reservations

    async def release_reservation(self, reservation_id: int, store_id: int) -> Reservation:
        async with self.locks.hold(f"reservation:{reservation_id}"):
            async with self.session_factory() as session:
                async with session.begin():
                    reservation = await commands.release_reservation(
                        session, reservation_id, store_id
                    )

        logger.info("Released reservation id=%s store=%s", reservation_id, store_id)
        await self._publish(
            ReservationReleased(
                reservation_id=reservation.id,
                order_id=reservation.order_id,
                product_variant_id=reservation.product_variant_id,
                store_id=store_id,
                quantity=reservation.quantity,
                timestamp=datetime.now(timezone.utc),
            )
        )
        return reservation

    async def adjust_stock(
        self,
        variant_id: int,
        store_id: int,
        quantity_change: int,
        reason: str,
        created_by_id: int | None = None,
    ) -> StockLevel:
        async with self.locks.hold(variant_id):
            async with self.session_factory() as session:
                async with session.begin():
                    new_stock = await commands.adjust_stock(
                        session, variant_id, store_id, quantity_change, reason, created_by_id
                    )
                    level = await queries.get_stock_level(session, variant_id)

        logger.info(
            "Adjusted stock variant=%s store=%s change=%+d new_stock=%d reason=%s",
            variant_id,
            store_id,
            quantity_change,
            new_stock,
            reason,
        )
        await self._publish(
            StockAdjusted(
                product_variant_id=variant_id,
                store_id=store_id,
                quantity_change=quantity_change,
                new_stock=new_stock,
                reason=reason,
                timestamp=datetime.now(timezone.utc),
            )
        )
        return level

    async def _publish(self, event) -> None:
        if self.publisher is not None:
            await self.publisher.publish(event)
