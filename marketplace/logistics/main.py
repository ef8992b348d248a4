"""
Logistics Service — FastAPI エントリーポイント

配送レコードの作成とステータス更新。在庫・決済には触れない。
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..order.lookup import HttpOrderLookup, LocalOrderLookup, OrderLookup
from ..shared.db import create_schema, deliveries
from ..shared.http import install_error_handlers
from . import commands, queries
from .status import DeliveryStatus

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_SERVICE_URL = os.environ.get("ORDER_SERVICE_URL")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_schema(engine, deliveries)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()


app = FastAPI(title="Logistics Service", lifespan=lifespan)
install_error_handlers(app)


def get_order_lookup() -> OrderLookup:
    if ORDER_SERVICE_URL:
        return HttpOrderLookup(ORDER_SERVICE_URL)
    return LocalOrderLookup(async_session, redis_pool)


# ── Request Models ───────────────────────────────


class DeliveryRequest(BaseModel):
    order_id: str
    recipient_name: str | None = None
    recipient_address: str | None = None
    delivery_agent: str | None = None
    estimated_delivery_date: datetime | None = None


class DeliveryUpdateRequest(BaseModel):
    status: DeliveryStatus
    current_location: str | None = None
    notes: str | None = None


class CancelRequest(BaseModel):
    reason: str


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/deliveries", status_code=201)
async def cmd_create_delivery(req: DeliveryRequest):
    """配送作成（注文が決済済みでなければ 409）"""
    async with async_session() as session:
        delivery = await commands.create_delivery(
            session,
            redis_pool,
            req.order_id,
            req.estimated_delivery_date,
            recipient_name=req.recipient_name,
            recipient_address=req.recipient_address,
            delivery_agent=req.delivery_agent,
            orders=get_order_lookup(),
        )
        return delivery.to_dict()


@app.post("/commands/deliveries/{tracking_number}/status")
async def cmd_update_status(tracking_number: str, req: DeliveryUpdateRequest):
    """配送ステータス更新（終端状態からの変更は 400）"""
    async with async_session() as session:
        delivery = await commands.update_delivery_status(
            session, redis_pool, tracking_number,
            req.status, req.current_location, req.notes,
        )
        return delivery.to_dict()


@app.post("/commands/deliveries/{tracking_number}/cancel")
async def cmd_cancel_delivery(tracking_number: str, req: CancelRequest):
    async with async_session() as session:
        delivery = await commands.cancel_delivery(
            session, redis_pool, tracking_number, req.reason
        )
        return delivery.to_dict()


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/deliveries/{tracking_number}")
async def query_get_delivery(tracking_number: str):
    """配送詳細（注文情報付き、取得できなければ order は null）"""
    async with async_session() as session:
        delivery = await queries.get_delivery(session, tracking_number)
    if not delivery:
        raise HTTPException(404, "Delivery not found")
    return await queries.with_order_details(delivery, get_order_lookup())


@app.get("/queries/deliveries/by-order/{order_id}")
async def query_delivery_by_order(order_id: str):
    async with async_session() as session:
        delivery = await queries.get_delivery_by_order(session, order_id)
    if not delivery:
        raise HTTPException(404, "Delivery not found")
    return delivery.to_dict()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "logistics-service"}
