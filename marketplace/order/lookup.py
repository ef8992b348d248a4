"""
Order Service — 注文コラボレータ

Payment Saga と Logistics が注文を参照・更新するための窓口。

  LocalOrderLookup : 同じ DB を直接読む（同一プロセスで動かす場合）
  HttpOrderLookup  : Order Service の HTTP API を httpx で呼ぶ
"""

from typing import Protocol

import httpx
import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from ..shared.errors import InvalidStateTransitionError, NotFoundError
from . import commands, queries
from .models import LineItem, OrderStatus


class OrderLookup(Protocol):
    async def get_order(self, order_id: str) -> dict | None: ...

    async def get_line_items(self, order_id: str) -> list[LineItem]: ...

    async def set_status(self, order_id: str, status: OrderStatus) -> None: ...


class LocalOrderLookup:
    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis | None = None,
    ):
        self.session_factory = session_factory
        self.redis = redis

    async def get_order(self, order_id: str) -> dict | None:
        async with self.session_factory() as session:
            return await queries.get_order(session, order_id)

    async def get_line_items(self, order_id: str) -> list[LineItem]:
        async with self.session_factory() as session:
            return await queries.get_line_items(session, order_id)

    async def set_status(self, order_id: str, status: OrderStatus) -> None:
        async with self.session_factory() as session:
            await commands.set_order_status(session, self.redis, order_id, status)


class HttpOrderLookup:
    """Order Service のエンドポイントを呼ぶクライアント。"""

    def __init__(
        self,
        order_service_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.order_url = order_service_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def get_order(self, order_id: str) -> dict | None:
        async with self._client() as client:
            resp = await client.get(f"{self.order_url}/queries/orders/{order_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

    async def get_line_items(self, order_id: str) -> list[LineItem]:
        async with self._client() as client:
            resp = await client.get(f"{self.order_url}/queries/orders/{order_id}/items")
            if resp.status_code == 404:
                raise NotFoundError("Order", order_id)
            resp.raise_for_status()
            return [LineItem(item["product_id"], item["quantity"]) for item in resp.json()]

    async def set_status(self, order_id: str, status: OrderStatus) -> None:
        async with self._client() as client:
            resp = await client.post(
                f"{self.order_url}/commands/orders/{order_id}/status",
                json={"status": status.value},
            )
            if resp.status_code == 404:
                raise NotFoundError("Order", order_id)
            if resp.status_code == 400:
                body = resp.json()
                raise InvalidStateTransitionError(
                    body.get("source_status"), status.value, body.get("detail", resp.text)
                )
            resp.raise_for_status()
