"""
Order Service — FastAPI エントリーポイント

注文の作成（在庫引き当て Saga 付き）とステータス更新、
Payment / Logistics から参照される明細取得を提供する。
"""

import logging
import os
from contextlib import asynccontextmanager
from uuid import uuid4

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..inventory.ledger import InventoryLedger
from ..shared.db import create_schema, inventory, order_items, orders
from ..shared.http import install_error_handlers
from . import commands, queries
from .models import LineItem, OrderStatus
from .placement import OrderPlacementSaga

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_schema(engine, orders, order_items, inventory)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class LineItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)


class PlaceOrderRequest(BaseModel):
    user_id: str
    items: list[LineItemRequest] = Field(min_length=1)


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/orders")
async def cmd_place_order(req: PlaceOrderRequest):
    """注文作成 + 全明細の在庫引き当て（失敗時は補償してキャンセル）"""
    saga = OrderPlacementSaga(
        async_session,
        InventoryLedger(async_session, redis_pool),
        redis_pool,
    )
    return await saga.execute(
        order_id=str(uuid4()),
        user_id=req.user_id,
        items=[LineItem(i.product_id, i.quantity) for i in req.items],
    )


@app.post("/commands/orders/{order_id}/status")
async def cmd_set_status(order_id: str, req: UpdateStatusRequest):
    """注文ステータス更新（Payment Saga から呼ばれる）"""
    async with async_session() as session:
        return await commands.set_order_status(session, redis_pool, order_id, req.status)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@app.get("/queries/orders/{order_id}/items")
async def query_line_items(order_id: str):
    async with async_session() as session:
        items = await queries.get_line_items(session, order_id)
        return [{"product_id": i.product_id, "quantity": i.quantity} for i in items]


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
