"""
Order Service — クエリハンドラ (CQRS の Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.db import order_items, orders
from ..shared.errors import NotFoundError
from .models import LineItem


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文と明細を取得する。"""
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, order_id)
    return {
        "id": row.id,
        "user_id": row.user_id,
        "status": row.status,
        "items": [
            {"product_id": item.product_id, "quantity": item.quantity}
            for item in items
        ],
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_line_items(session: AsyncSession, order_id: str) -> list[LineItem]:
    """注文明細を行番号順に返す。注文がなければ NotFound。"""
    result = await session.execute(select(orders.c.id).where(orders.c.id == order_id))
    if result.fetchone() is None:
        raise NotFoundError("Order", order_id)
    return await _load_items(session, order_id)


async def _load_items(session: AsyncSession, order_id: str) -> list[LineItem]:
    result = await session.execute(
        select(order_items.c.product_id, order_items.c.quantity)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.line_no)
    )
    return [LineItem(row.product_id, row.quantity) for row in result.fetchall()]
