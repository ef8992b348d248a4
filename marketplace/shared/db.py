"""
Shared — テーブル定義

各サービスは自分が所有するテーブルだけを作成する（Database per Service）。
定義自体はここに集約し、コマンド/クエリ側は Core の式で参照する。

在庫カウンタは CHECK 制約でも非負を保証するが、アプリ側では
条件付き UPDATE (WHERE available_quantity >= :qty) で不足を検知する。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()


# ── Inventory Service ────────────────────────────

inventory = Table(
    "inventory",
    metadata,
    Column("product_id", String(64), primary_key=True),
    Column("available_quantity", Integer, nullable=False, default=0),
    Column("reserved_quantity", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("available_quantity >= 0", name="ck_inventory_available"),
    CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved"),
)


# ── Order Service ────────────────────────────────

orders = Table(
    "orders",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("status", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(64), ForeignKey("orders.id"), nullable=False, index=True),
    Column("line_no", Integer, nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    UniqueConstraint("order_id", "line_no", name="uq_order_items_line"),
)


# ── Payment Service ──────────────────────────────
# order_id は UNIQUE: 1 注文の引き当てを解消する決済は 1 件だけ

payments = Table(
    "payments",
    metadata,
    Column("transaction_ref", String(64), primary_key=True),
    Column("order_id", String(64), nullable=False, unique=True),
    Column("user_id", String(64), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("status", String(16), nullable=False),
    Column("gateway_response", String(255)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

payment_saga_steps = Table(
    "payment_saga_steps",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("transaction_ref", String(64), nullable=False, index=True),
    Column("step", Integer, nullable=False),
    Column("action", String(32), nullable=False),
    Column("product_id", String(64)),
    Column("quantity", Integer),
    Column("status", String(16), nullable=False),
    Column("error", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("transaction_ref", "step", name="uq_saga_step"),
)


# ── Logistics Service ────────────────────────────

deliveries = Table(
    "deliveries",
    metadata,
    Column("tracking_number", String(32), primary_key=True),
    Column("order_id", String(64), nullable=False, unique=True),
    Column("status", String(16), nullable=False),
    Column("current_location", String(255)),
    Column("recipient_name", String(255)),
    Column("recipient_address", Text),
    Column("delivery_agent", String(255)),
    Column("notes", Text),
    Column("estimated_delivery_date", DateTime(timezone=True)),
    Column("actual_delivery_date", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine, *tables: Table) -> None:
    """指定テーブル（省略時は全テーブル）を作成する。既存テーブルはそのまま。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all, tables=list(tables) or None)
