"""
Stockroom — テーブル定義

在庫はバリアント単位で管理する。
  product_variants        … 実在庫 (stock_quantity) を持つ
  inventory_reservations  … 注文明細ごとの引き当て。released_at が NULL の間だけ有効
  inventory_movements     … 在庫に影響したすべての操作の追記専用ログ

available = stock_quantity - SUM(有効な引き当て数) は保存せず、都度算出する。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

product_variants = Table(
    "product_variants",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("product_id", Integer, nullable=True),
    Column("sku", String(100), nullable=False, default=""),
    Column("stock_quantity", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("stock_quantity >= 0", name="ck_variant_stock_non_negative"),
)

inventory_reservations = Table(
    "inventory_reservations",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", Integer, nullable=False, index=True),
    Column(
        "product_variant_id",
        Integer,
        ForeignKey("product_variants.id"),
        nullable=False,
    ),
    Column("quantity", Integer, nullable=False),
    Column("reserved_at", DateTime(timezone=True), nullable=False),
    Column("released_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
    Index("ix_reservations_variant_active", "product_variant_id", "released_at"),
)

inventory_movements = Table(
    "inventory_movements",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "product_variant_id",
        Integer,
        ForeignKey("product_variants.id"),
        nullable=False,
    ),
    Column("store_id", Integer, nullable=False),
    Column("type", String(3), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("reason", String(255), nullable=True),
    Column("reference_id", String(64), nullable=True),
    Column("created_by_id", Integer, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("type IN ('in', 'out')", name="ck_movement_type"),
    Index("ix_movements_variant_store_created", "product_variant_id", "store_id", "created_at"),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
