"""
Stockroom — 読み取りモデル

テーブルの行と算出値 (StockLevel) を API / 呼び出し側に返す形。
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class StockLevel(BaseModel):
    """バリアントの在庫状況 (保存しない算出値)"""
    variant_id: int
    sku: str
    current_stock: int
    reserved_quantity: int
    available_stock: int

    @classmethod
    def compute(cls, variant_id: int, sku: str, current_stock: int, reserved: int) -> "StockLevel":
        return cls(
            variant_id=variant_id,
            sku=sku,
            current_stock=current_stock,
            reserved_quantity=reserved,
            available_stock=max(0, current_stock - reserved),
        )


class Reservation(BaseModel):
    id: int
    order_id: int
    product_variant_id: int
    quantity: int
    reserved_at: datetime
    released_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.released_at is None


class Movement(BaseModel):
    id: int
    product_variant_id: int
    store_id: int
    type: Literal["in", "out"]
    quantity: int
    reason: str | None = None
    reference_id: str | None = None
    created_by_id: int | None = None
    created_at: datetime
