"""
Stockroom — クエリハンドラ (Read 側)

available_stock はここで毎回算出する (キャッシュしない)。
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFoundError
from .models import Movement, Reservation, StockLevel
from .tables import inventory_movements, inventory_reservations, product_variants


async def get_variant(session: AsyncSession, variant_id: int):
    result = await session.execute(
        select(
            product_variants.c.id,
            product_variants.c.sku,
            product_variants.c.stock_quantity,
        ).where(product_variants.c.id == variant_id)
    )
    row = result.first()
    if row is None:
        raise NotFoundError("Product Variant", variant_id)
    return row


async def get_reserved_quantity(session: AsyncSession, variant_id: int) -> int:
    result = await session.execute(
        select(func.coalesce(func.sum(inventory_reservations.c.quantity), 0)).where(
            inventory_reservations.c.product_variant_id == variant_id,
            inventory_reservations.c.released_at.is_(None),
        )
    )
    return int(result.scalar_one())


async def get_stock_level(session: AsyncSession, variant_id: int) -> StockLevel:
    variant = await get_variant(session, variant_id)
    reserved = await get_reserved_quantity(session, variant_id)
    return StockLevel.compute(
        variant_id=variant.id,
        sku=variant.sku or "",
        current_stock=variant.stock_quantity or 0,
        reserved=reserved,
    )


async def get_reservation(session: AsyncSession, reservation_id: int) -> Reservation:
    result = await session.execute(
        select(inventory_reservations).where(inventory_reservations.c.id == reservation_id)
    )
    row = result.first()
    if row is None:
        raise NotFoundError("Reservation", reservation_id)
    return Reservation.model_validate(row._asdict())


async def list_order_reservations(session: AsyncSession, order_id: int) -> list[Reservation]:
    result = await session.execute(
        select(inventory_reservations)
        .where(inventory_reservations.c.order_id == order_id)
        .order_by(inventory_reservations.c.id)
    )
    return [Reservation.model_validate(row._asdict()) for row in result]


async def list_variant_reservations(
    session: AsyncSession,
    variant_id: int,
    active_only: bool = True,
) -> list[Reservation]:
    stmt = select(inventory_reservations).where(
        inventory_reservations.c.product_variant_id == variant_id
    )
    if active_only:
        stmt = stmt.where(inventory_reservations.c.released_at.is_(None))
    result = await session.execute(stmt.order_by(inventory_reservations.c.id))
    return [Reservation.model_validate(row._asdict()) for row in result]


async def list_movements(
    session: AsyncSession,
    variant_id: int,
    store_id: int,
    limit: int = 50,
) -> list[Movement]:
    result = await session.execute(
        select(inventory_movements)
        .where(
            inventory_movements.c.product_variant_id == variant_id,
            inventory_movements.c.store_id == store_id,
        )
        .order_by(inventory_movements.c.created_at.desc(), inventory_movements.c.id.desc())
        .limit(limit)
    )
    return [Movement.model_validate(row._asdict()) for row in result]


async def list_variant_ids(session: AsyncSession) -> list[int]:
    result = await session.execute(select(product_variants.c.id).order_by(product_variants.c.id))
    return list(result.scalars())
