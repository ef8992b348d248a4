"""
Inventory Service — FastAPI エントリーポイント

在庫台帳サービス。引き当て(reserve)・解放(release)・確定(confirm)と
在庫数の登録を Command として公開する。
"""

import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..shared.db import create_schema, inventory
from ..shared.http import install_error_handlers
from .ledger import InventoryLedger

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
    await create_schema(engine, inventory)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)


def get_ledger() -> InventoryLedger:
    return InventoryLedger(async_session, redis_pool)


# ── Request Models ───────────────────────────────


class StockOperationRequest(BaseModel):
    quantity: int = Field(gt=0)


class SetAvailableRequest(BaseModel):
    quantity: int = Field(ge=0)


# ── Command Endpoints (Write 側) ─────────────────


@app.put("/commands/inventory/{product_id}")
async def cmd_set_available(product_id: str, req: SetAvailableRequest):
    """在庫数の登録・上書き（reserved は変更しない）"""
    return await get_ledger().set_available(product_id, req.quantity)


@app.post("/commands/inventory/{product_id}/reserve")
async def cmd_reserve(product_id: str, req: StockOperationRequest):
    """在庫引き当てコマンド（不足時は 409）"""
    return await get_ledger().reserve_stock(product_id, req.quantity)


@app.post("/commands/inventory/{product_id}/release")
async def cmd_release(product_id: str, req: StockOperationRequest):
    """在庫解放コマンド（補償トランザクション）"""
    return await get_ledger().release_stock(product_id, req.quantity)


@app.post("/commands/inventory/{product_id}/confirm")
async def cmd_confirm(product_id: str, req: StockOperationRequest):
    """引き当て確定コマンド（決済成功時）"""
    return await get_ledger().confirm_reservation(product_id, req.quantity)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/inventory/{product_id}")
async def query_get_inventory(product_id: str):
    record = await get_ledger().get_inventory(product_id)
    if not record:
        raise HTTPException(404, "Inventory not found")
    return record


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
