"""
Stockroom — コマンドハンドラ (Write 側)

在庫の引き当て(Reserve)・解放(Release)・手動調整(Adjust) を処理する。

ここの関数はトランザクションを開始・コミットしない。
呼び出し側 (InventoryLedger) がバリアント単位のロックを取得し、
1 トランザクションの中で呼ぶこと。移動ログ(movement)は
在庫変更と同じトランザクションで書き込む。
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .errors import InsufficientStockError, ValidationError
from .models import Movement, Reservation
from .tables import inventory_movements, inventory_reservations, product_variants

RESERVATION_REASON = "order_reservation"
RELEASE_REASON = "reservation_release"


@dataclass(frozen=True)
class ReserveItem:
    product_variant_id: int
    quantity: int


async def add_movement(
    session: AsyncSession,
    variant_id: int,
    store_id: int,
    movement_type: str,
    quantity: int,
    reason: str | None = None,
    reference_id: str | None = None,
    created_by_id: int | None = None,
) -> Movement:
    result = await session.execute(
        insert(inventory_movements)
        .values(
            product_variant_id=variant_id,
            store_id=store_id,
            type=movement_type,
            quantity=quantity,
            reason=reason or None,
            reference_id=reference_id or None,
            created_by_id=created_by_id,
            created_at=datetime.now(timezone.utc),
        )
        .returning(*inventory_movements.c)
    )
    return Movement.model_validate(result.one()._asdict())


async def reserve_stock(
    session: AsyncSession,
    order_id: int,
    items: list[ReserveItem],
    store_id: int,
) -> list[Reservation]:
    """
    注文明細ごとに在庫を引き当てる。

    明細は順番に処理し、毎回在庫を再計算する。同じバリアントが
    複数明細に現れても、前の明細の引き当てが後の確認に反映される。
    1 明細でも失敗すれば例外を送出する (ロールバックは呼び出し側)。
    """
    reservations: list[Reservation] = []

    for item in items:
        if item.quantity <= 0:
            raise ValidationError(
                "Quantity must be a positive integer",
                {"product_variant_id": item.product_variant_id, "quantity": item.quantity},
            )
        level = await queries.get_stock_level(session, item.product_variant_id)
        if item.quantity > level.available_stock:
            raise InsufficientStockError(
                sku=level.sku,
                available=level.available_stock,
                requested=item.quantity,
            )

        result = await session.execute(
            insert(inventory_reservations)
            .values(
                order_id=order_id,
                product_variant_id=item.product_variant_id,
                quantity=item.quantity,
                reserved_at=datetime.now(timezone.utc),
                released_at=None,
            )
            .returning(*inventory_reservations.c)
        )
        reservations.append(Reservation.model_validate(result.one()._asdict()))

        await add_movement(
            session,
            item.product_variant_id,
            store_id,
            "out",
            -item.quantity,
            RESERVATION_REASON,
            str(order_id),
        )

    return reservations


async def release_reservation(
    session: AsyncSession,
    reservation_id: int,
    store_id: int,
) -> Reservation:
    """
    引き当てを解放する (注文キャンセル時)。

    released_at は一度だけ設定される。解放済みなら ValidationError。
    """
    reservation = await queries.get_reservation(session, reservation_id)
    if reservation.released_at is not None:
        raise ValidationError(
            "Reservation has already been released",
            {"reservation_id": reservation_id},
        )

    now = datetime.now(timezone.utc)
    # released_at IS NULL を条件に含め、並行した二重解放でも 1 回だけ成功させる
    result = await session.execute(
        update(inventory_reservations)
        .where(
            inventory_reservations.c.id == reservation_id,
            inventory_reservations.c.released_at.is_(None),
        )
        .values(released_at=now)
    )
    if result.rowcount != 1:
        raise ValidationError(
            "Reservation has already been released",
            {"reservation_id": reservation_id},
        )

    await add_movement(
        session,
        reservation.product_variant_id,
        store_id,
        "in",
        reservation.quantity,
        RELEASE_REASON,
        str(reservation_id),
    )
    return reservation.model_copy(update={"released_at": now})


async def adjust_stock(
    session: AsyncSession,
    variant_id: int,
    store_id: int,
    quantity_change: int,
    reason: str,
    created_by_id: int | None = None,
) -> int:
    """
    実在庫を手動で増減する (棚卸し補正・返品・破損など)。

    結果は 0 未満にならない。大きな負の調整は 0 で止まり、エラーにはしない。
    移動ログには指定された増減値をそのまま (符号付きで) 記録する。
    Returns: 調整後の在庫数
    """
    variant = await queries.get_variant(session, variant_id)

    if quantity_change == 0:
        raise ValidationError("Quantity change cannot be zero")

    new_stock = max(0, (variant.stock_quantity or 0) + quantity_change)
    await session.execute(
        update(product_variants)
        .where(product_variants.c.id == variant_id)
        .values(stock_quantity=new_stock, updated_at=datetime.now(timezone.utc))
    )

    movement_type = "in" if quantity_change > 0 else "out"
    await add_movement(
        session,
        variant_id,
        store_id,
        movement_type,
        quantity_change,
        reason,
        created_by_id=created_by_id,
    )
    return new_stock
