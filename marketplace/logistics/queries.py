"""
Logistics Service — クエリハンドラ
"""

import logging

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..order.lookup import OrderLookup
from ..shared.db import deliveries
from .aggregate import Delivery

logger = logging.getLogger(__name__)


async def get_delivery(session: AsyncSession, tracking_number: str) -> Delivery | None:
    result = await session.execute(
        select(deliveries).where(deliveries.c.tracking_number == tracking_number)
    )
    row = result.fetchone()
    return Delivery.from_row(row) if row else None


async def get_delivery_by_order(session: AsyncSession, order_id: str) -> Delivery | None:
    result = await session.execute(
        select(deliveries).where(deliveries.c.order_id == order_id)
    )
    row = result.fetchone()
    return Delivery.from_row(row) if row else None


async def with_order_details(delivery: Delivery, orders: OrderLookup) -> dict:
    """
    配送に注文情報を付けて返す。

    注文サービスへの問い合わせが失敗しても配送自体は返す（order は None）。
    """
    details = delivery.to_dict()
    try:
        details["order"] = await orders.get_order(delivery.order_id)
    except (httpx.HTTPError, SQLAlchemyError, ValueError) as e:
        logger.warning(
            "Could not enrich delivery %s with order %s: %s",
            delivery.tracking_number, delivery.order_id, e,
        )
        details["order"] = None
    return details
