"""
Shared fixtures for the stockroom test suite.

The storage collaborator is a throwaway SQLite file per test (aiosqlite),
created from the same table definitions the service uses.
"""

import random

import pytest
import pytest_asyncio
from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from stockroom.ledger import InventoryLedger
from stockroom.locks import KeyedLocks
from stockroom.tables import (
    create_schema,
    inventory_movements,
    inventory_reservations,
    product_variants,
)


class NoJitter(random.Random):
    """Random source whose jitter is always zero."""

    def uniform(self, a, b):
        return 0.0


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingPublisher:
    """Collects published events instead of sending them to redis."""

    def __init__(self):
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_jitter():
    return NoJitter()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stockroom.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def ledger(session_factory, publisher):
    return InventoryLedger(session_factory, KeyedLocks(), publisher)


@pytest.fixture
def seed_variant(session_factory):
    """Insert a product variant and return its id."""

    async def _seed(stock: int = 10, sku: str = "TSHIRT-BLK-M") -> int:
        async with session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    insert(product_variants)
                    .values(product_id=1, sku=sku, stock_quantity=stock)
                    .returning(product_variants.c.id)
                )
                return result.scalar_one()

    return _seed


@pytest.fixture
def count_rows(session_factory):
    """Count reservation / movement rows for a variant."""

    async def _count(variant_id: int) -> tuple[int, int]:
        async with session_factory() as session:
            reservations = await session.scalar(
                select(func.count())
                .select_from(inventory_reservations)
                .where(inventory_reservations.c.product_variant_id == variant_id)
            )
            movements = await session.scalar(
                select(func.count())
                .select_from(inventory_movements)
                .where(inventory_movements.c.product_variant_id == variant_id)
            )
        return reservations, movements

    return _count
