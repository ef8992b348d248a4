"""
Order Service — コマンドハンドラ (CQRS の Write 側)

注文の一覧・検索はこのリポジトリの範囲外。Saga が必要とする
「作成」と「ステータス更新」だけを持つ。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.db import order_items, orders
from ..shared.errors import (
    InvalidQuantityError,
    InvalidStateTransitionError,
    NotFoundError,
)
from ..shared.events import publish_event
from .events import OrderCreated, OrderLine, OrderStatusChanged
from .models import CLOSED_STATUSES, LineItem, OrderStatus

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    user_id: str,
    items: list[LineItem],
) -> dict:
    """
    注文作成コマンド

    1. 注文と明細を status=PENDING で保存
    2. OrderCreated を発行
    在庫の引き当ては OrderPlacementSaga が行う。
    """
    if not items:
        raise InvalidQuantityError("Order must contain at least one line item")
    for item in items:
        if item.quantity <= 0:
            raise InvalidQuantityError(
                f"Quantity must be positive for product {item.product_id}"
            )

    now = datetime.now(timezone.utc)
    await session.execute(
        insert(orders).values(
            id=order_id,
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
    )
    await session.execute(
        insert(order_items),
        [
            {
                "order_id": order_id,
                "line_no": line_no,
                "product_id": item.product_id,
                "quantity": item.quantity,
            }
            for line_no, item in enumerate(items, start=1)
        ],
    )
    await session.commit()
    logger.info("Created order %s with %s line items", order_id, len(items))

    await publish_event(
        redis,
        CHANNEL,
        OrderCreated(
            order_id=order_id,
            user_id=user_id,
            items=[OrderLine(product_id=i.product_id, quantity=i.quantity) for i in items],
            timestamp=now,
        ),
    )
    return {"order_id": order_id, "status": OrderStatus.PENDING.value}


async def set_order_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    status: OrderStatus,
) -> dict:
    """
    注文ステータス更新コマンド（Saga から呼ばれる）

    閉じた状態（CANCELLED など）からは同じ状態への再設定だけを許可する。
    判定は UPDATE の WHERE 句で行い、同時更新でも閉じた注文は上書きされない。
    """
    result = await session.execute(select(orders.c.status).where(orders.c.id == order_id))
    row = result.fetchone()
    if row is None:
        raise NotFoundError("Order", order_id)
    previous = row.status

    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order_id,
            or_(
                orders.c.status.not_in([s.value for s in CLOSED_STATUSES]),
                orders.c.status == status.value,
            ),
        )
        .values(status=status.value, updated_at=now)
    )
    if result.rowcount == 0:
        await session.rollback()
        current = await _current_status(session, order_id)
        logger.warning(
            "Refused to move order %s from %s to %s", order_id, current, status.value
        )
        raise InvalidStateTransitionError(
            current,
            status.value,
            f"Order {order_id} is {current}; cannot change status to {status.value}",
        )
    await session.commit()
    logger.info("Order %s status %s -> %s", order_id, previous, status.value)

    await publish_event(
        redis,
        CHANNEL,
        OrderStatusChanged(
            order_id=order_id,
            previous_status=previous,
            status=status.value,
            timestamp=now,
        ),
    )
    return {"order_id": order_id, "status": status.value}


async def _current_status(session: AsyncSession, order_id: str) -> str:
    result = await session.execute(select(orders.c.status).where(orders.c.id == order_id))
    row = result.fetchone()
    if row is None:
        raise NotFoundError("Order", order_id)
    return row.status
