"""
Pytest 設定と共通フィクスチャ

テストごとに全テーブルを作成した SQLite ファイル（aiosqlite）を用意し、
Redis クライアントは AsyncMock で置き換える。
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from marketplace.inventory import queries as inventory_queries
from marketplace.inventory.ledger import InventoryLedger
from marketplace.order import commands as order_commands
from marketplace.order.lookup import LocalOrderLookup
from marketplace.order.models import LineItem
from marketplace.shared.db import create_schema


class RecordingLedger(InventoryLedger):
    """confirm / release の呼び出しを記録する InventoryLedger"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls: list[tuple[str, str, int]] = []

    async def confirm_reservation(self, product_id: str, quantity: int) -> dict:
        self.calls.append(("confirm", product_id, quantity))
        return await super().confirm_reservation(product_id, quantity)

    async def release_stock(self, product_id: str, quantity: int) -> dict:
        self.calls.append(("release", product_id, quantity))
        return await super().release_stock(product_id, quantity)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def redis():
    return AsyncMock()


@pytest.fixture
def ledger(session_factory, redis):
    return RecordingLedger(session_factory, redis)


@pytest.fixture
def orders(session_factory, redis):
    return LocalOrderLookup(session_factory, redis)


@pytest.fixture
def create_order(session_factory, redis):
    """注文行を直接作成する（在庫の引き当てはしない）"""

    async def _create(order_id: str, items: list[tuple[str, int]], user_id: str = "user-1"):
        async with session_factory() as session:
            return await order_commands.create_order(
                session, redis, order_id, user_id,
                [LineItem(product_id, quantity) for product_id, quantity in items],
            )

    return _create


@pytest.fixture
def stock(session_factory):
    """商品の (available, reserved) を読む"""

    async def _stock(product_id: str) -> tuple[int, int]:
        async with session_factory() as session:
            record = await inventory_queries.get_inventory(session, product_id)
        return record["available_quantity"], record["reserved_quantity"]

    return _stock
