"""
Payment Service — FastAPI エントリーポイント

決済の開始、ゲートウェイからの Webhook、止まった Saga の再開を公開する。
ORDER_SERVICE_URL が設定されていれば注文は HTTP 経由で参照し、
なければ同じ DB の注文テーブルを直接読む。
"""

import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..inventory.ledger import InventoryLedger
from ..order.lookup import HttpOrderLookup, LocalOrderLookup, OrderLookup
from ..shared.db import (
    create_schema,
    inventory,
    order_items,
    orders,
    payment_saga_steps,
    payments,
)
from ..shared.http import install_error_handlers
from .coordinator import PaymentSagaCoordinator
from .gateway import SimulatedGateway
from .status import PaymentStatus

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_SERVICE_URL = os.environ.get("ORDER_SERVICE_URL")
GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
gateway = SimulatedGateway()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    tables = [payments, payment_saga_steps, inventory]
    if not ORDER_SERVICE_URL:
        tables += [orders, order_items]
    await create_schema(engine, *tables)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()


app = FastAPI(title="Payment Service", lifespan=lifespan)
install_error_handlers(app)


def get_order_lookup() -> OrderLookup:
    if ORDER_SERVICE_URL:
        return HttpOrderLookup(ORDER_SERVICE_URL)
    return LocalOrderLookup(async_session, redis_pool)


def get_coordinator() -> PaymentSagaCoordinator:
    return PaymentSagaCoordinator(
        async_session,
        InventoryLedger(async_session, redis_pool),
        get_order_lookup(),
        gateway=gateway,
        redis=redis_pool,
        gateway_timeout=GATEWAY_TIMEOUT_SECONDS,
    )


# ── Request Models ───────────────────────────────


class PaymentRequest(BaseModel):
    order_id: str
    amount: Decimal = Field(gt=0)


class GatewayCallbackRequest(BaseModel):
    status: PaymentStatus
    gateway_response: str | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/payments", status_code=201)
async def cmd_initiate_payment(req: PaymentRequest):
    """決済開始（ゲートウェイの結果まで同期的に処理する）"""
    payment = await get_coordinator().initiate_payment(req.order_id, req.amount)
    return payment.to_dict()


@app.post("/commands/payments/{transaction_ref}/callback")
async def cmd_gateway_callback(transaction_ref: str, req: GatewayCallbackRequest):
    """
    ゲートウェイからの Webhook。

    同じ通知が複数回届いても 2 回目以降は保存済みの決済を返すだけ。
    """
    payment = await get_coordinator().process_gateway_callback(
        transaction_ref, req.status, req.gateway_response or "Webhook Callback Data"
    )
    return payment.to_dict()


@app.post("/commands/payments/{transaction_ref}/resume")
async def cmd_resume_saga(transaction_ref: str):
    """止まったファンアウトを再開する（運用・リトライ用）"""
    coordinator = get_coordinator()
    payment = await coordinator.resume_saga(transaction_ref)
    steps = await coordinator.get_saga_steps(transaction_ref)
    return {"payment": payment.to_dict(), "saga_log": [s.to_dict() for s in steps]}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/payments/{transaction_ref}")
async def query_get_payment(transaction_ref: str):
    coordinator = get_coordinator()
    payment = await coordinator.get_payment(transaction_ref)
    steps = await coordinator.get_saga_steps(transaction_ref)
    return {**payment.to_dict(), "saga_log": [s.to_dict() for s in steps]}


@app.get("/queries/payments/by-order/{order_id}")
async def query_payment_by_order(order_id: str):
    return await get_coordinator().get_payment_details(order_id)


@app.get("/queries/sagas/incomplete")
async def query_incomplete_sagas():
    """ファンアウトが完了していない決済（部分完了の検出用）"""
    return await get_coordinator().find_incomplete_sagas()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payment-service"}
