"""
Logistics Service — コマンドハンドラ

配送は決済済みの注文に対して後から作られ、在庫には一切触れない。
更新系は対象行を SELECT ... FOR UPDATE で読み、集約に遷移を適用してから書き戻す。
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..order.lookup import OrderLookup
from ..order.models import SHIPPABLE_STATUSES
from ..shared.db import deliveries
from ..shared.errors import (
    DuplicateDeliveryError,
    InvalidStateError,
    InvalidStateTransitionError,
    NotFoundError,
)
from ..shared.events import publish_event
from . import queries
from .aggregate import Delivery
from .events import DeliveryCancelled, DeliveryCreated, DeliveryStatusChanged
from .status import DeliveryStatus

logger = logging.getLogger(__name__)

CHANNEL = "delivery_events"
INITIAL_LOCATION = "Order Confirmed"
DEFAULT_LEAD_TIME = timedelta(days=1)


def new_tracking_number() -> str:
    return "TRK-" + uuid4().hex[:8].upper()


async def create_delivery(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    estimated_delivery_date: datetime | None = None,
    recipient_name: str | None = None,
    recipient_address: str | None = None,
    delivery_agent: str | None = None,
    orders: OrderLookup | None = None,
) -> Delivery:
    """
    配送作成コマンド。同じ注文に 2 件目は作れない。

    orders が渡されれば、注文が存在し決済済み（PAID 以降）であることを確認する。
    """
    logger.info("Creating delivery for order %s", order_id)
    if orders is not None:
        order = await orders.get_order(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if order["status"] not in {s.value for s in SHIPPABLE_STATUSES}:
            raise InvalidStateError(
                f"Order {order_id} is {order['status']}; deliveries need a paid order"
            )

    existing = await queries.get_delivery_by_order(session, order_id)
    if existing is not None:
        raise DuplicateDeliveryError(order_id, existing.tracking_number)

    now = datetime.now(timezone.utc)
    tracking_number = new_tracking_number()
    try:
        await session.execute(
            insert(deliveries).values(
                tracking_number=tracking_number,
                order_id=order_id,
                status=DeliveryStatus.PENDING.value,
                current_location=INITIAL_LOCATION,
                recipient_name=recipient_name,
                recipient_address=recipient_address,
                delivery_agent=delivery_agent,
                notes=None,
                estimated_delivery_date=estimated_delivery_date or now + DEFAULT_LEAD_TIME,
                actual_delivery_date=None,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await queries.get_delivery_by_order(session, order_id)
        if existing is None:
            raise
        raise DuplicateDeliveryError(order_id, existing.tracking_number)

    delivery = await queries.get_delivery(session, tracking_number)
    await publish_event(
        redis,
        CHANNEL,
        DeliveryCreated(
            tracking_number=tracking_number,
            order_id=order_id,
            estimated_delivery_date=delivery.estimated_delivery_date,
            timestamp=now,
        ),
    )
    return delivery


async def update_delivery_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    tracking_number: str,
    new_status: DeliveryStatus,
    current_location: str | None = None,
    notes: str | None = None,
) -> Delivery:
    """
    配送ステータス更新コマンド

    終端状態からの変更は InvalidStateTransitionError。
    現在地は指定があれば上書き、メモは追記する。
    """
    logger.info("Updating status for %s to %s", tracking_number, new_status.value)
    delivery = await _load_for_update(session, tracking_number)
    previous = delivery.status
    now = datetime.now(timezone.utc)

    try:
        delivery.apply_status(new_status, now)
    except InvalidStateTransitionError as e:
        logger.warning("Rejected status change for %s: %s", tracking_number, e)
        raise
    delivery.move_to(current_location)
    delivery.append_note(notes)
    await _save(session, delivery)
    await session.commit()

    await publish_event(
        redis,
        CHANNEL,
        DeliveryStatusChanged(
            tracking_number=tracking_number,
            order_id=delivery.order_id,
            previous_status=previous.value,
            status=delivery.status.value,
            current_location=delivery.current_location,
            timestamp=now,
        ),
    )
    return delivery


async def cancel_delivery(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    tracking_number: str,
    reason: str,
) -> Delivery:
    """配送キャンセルコマンド。終端状態（CANCELLED を含む）からは拒否する。"""
    logger.info("Cancelling delivery %s: %s", tracking_number, reason)
    delivery = await _load_for_update(session, tracking_number)
    previous = delivery.status
    now = datetime.now(timezone.utc)

    try:
        delivery.apply_cancellation(reason, now)
    except InvalidStateTransitionError as e:
        logger.warning("Rejected cancellation for %s: %s", tracking_number, e)
        raise
    await _save(session, delivery)
    await session.commit()

    await publish_event(
        redis,
        CHANNEL,
        DeliveryCancelled(
            tracking_number=tracking_number,
            order_id=delivery.order_id,
            previous_status=previous.value,
            reason=reason,
            timestamp=now,
        ),
    )
    return delivery


async def _load_for_update(session: AsyncSession, tracking_number: str) -> Delivery:
    result = await session.execute(
        select(deliveries)
        .where(deliveries.c.tracking_number == tracking_number)
        .with_for_update()
    )
    row = result.fetchone()
    if row is None:
        raise NotFoundError("Delivery", tracking_number)
    return Delivery.from_row(row)


async def _save(session: AsyncSession, delivery: Delivery) -> None:
    await session.execute(
        update(deliveries)
        .where(deliveries.c.tracking_number == delivery.tracking_number)
        .values(
            status=delivery.status.value,
            current_location=delivery.current_location,
            notes=delivery.notes,
            actual_delivery_date=delivery.actual_delivery_date,
            updated_at=delivery.updated_at,
        )
    )
