"""
Inventory Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.db import inventory
from ..shared.errors import NotFoundError


async def get_inventory(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        select(inventory).where(inventory.c.product_id == product_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "product_id": row.product_id,
        "available_quantity": row.available_quantity,
        "reserved_quantity": row.reserved_quantity,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_available_stock(session: AsyncSession, product_id: str) -> int:
    record = await get_inventory(session, product_id)
    if record is None:
        raise NotFoundError("Inventory", product_id)
    return record["available_quantity"]
