"""
Inventory Service — 在庫台帳

コマンドハンドラをセッションファクトリと Redis に束ねたもの。
Payment Saga や注文作成 Saga にはコンストラクタで注入する。
"""

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from . import commands, queries


class InventoryLedger:
    """商品ごとの在庫カウンタ。操作ごとに 1 トランザクション。"""

    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis | None = None,
    ):
        self.session_factory = session_factory
        self.redis = redis

    async def reserve_stock(self, product_id: str, quantity: int) -> dict:
        async with self.session_factory() as session:
            return await commands.reserve_stock(session, self.redis, product_id, quantity)

    async def release_stock(self, product_id: str, quantity: int) -> dict:
        async with self.session_factory() as session:
            return await commands.release_stock(session, self.redis, product_id, quantity)

    async def confirm_reservation(self, product_id: str, quantity: int) -> dict:
        async with self.session_factory() as session:
            return await commands.confirm_reservation(
                session, self.redis, product_id, quantity
            )

    async def set_available(self, product_id: str, quantity: int) -> dict:
        async with self.session_factory() as session:
            return await commands.set_available(session, self.redis, product_id, quantity)

    async def get_inventory(self, product_id: str) -> dict | None:
        async with self.session_factory() as session:
            return await queries.get_inventory(session, product_id)

    async def get_available_stock(self, product_id: str) -> int:
        async with self.session_factory() as session:
            return await queries.get_available_stock(session, product_id)
