"""
Payment Service — クエリハンドラ
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.db import payments
from .aggregate import Payment


async def get_payment(session: AsyncSession, transaction_ref: str) -> Payment | None:
    result = await session.execute(
        select(payments).where(payments.c.transaction_ref == transaction_ref)
    )
    row = result.fetchone()
    return Payment.from_row(row) if row else None


async def get_payment_by_order(session: AsyncSession, order_id: str) -> Payment | None:
    """注文の最新の決済を返す。"""
    result = await session.execute(
        select(payments)
        .where(payments.c.order_id == order_id)
        .order_by(payments.c.created_at.desc())
        .limit(1)
    )
    row = result.fetchone()
    return Payment.from_row(row) if row else None
