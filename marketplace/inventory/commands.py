"""
Inventory Service — コマンドハンドラ (CQRS Write 側)

在庫は available (販売可能) と reserved (引き当て済み) の 2 つのカウンタで管理する。

  reserve : available -= q, reserved += q   (注文作成時)
  release : reserved -= q, available += q   (決済失敗時の補償)
  confirm : reserved -= q                   (決済成功時、在庫から永久に除外)

どのカウンタも「読んでから書く」とはしない。必ず
UPDATE ... WHERE available_quantity >= :qty のような条件付き UPDATE を 1 文で発行し、
rowcount が 0 なら行を読み直して NotFound か不足かを判定する。
同じ商品への同時引き当てが両方とも在庫チェックを通過することはない。

どの引き当ても最終的に confirm か release のどちらか一方で 1 回だけ解消される
必要があるが、その冪等性は 1 つ上の層（Payment Saga）が保証する。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.db import inventory
from ..shared.errors import (
    InsufficientStockError,
    InvalidQuantityError,
    InvalidStateError,
    NotFoundError,
)
from ..shared.events import publish_event
from . import queries
from .events import (
    ReservationConfirmed,
    StockLevelSet,
    StockReleased,
    StockReservationFailed,
    StockReserved,
)

logger = logging.getLogger(__name__)

CHANNEL = "inventory_events"


def _require_positive(quantity: int) -> None:
    if quantity <= 0:
        raise InvalidQuantityError(f"Quantity must be positive, got {quantity}")


async def reserve_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
) -> dict:
    """
    在庫引き当てコマンド

    1. available >= quantity を条件に available/reserved を同時に更新
    2. 更新 0 行なら NotFound か InsufficientStock（どちらも変更なし）
    3. コミット後に StockReserved を発行
    """
    _require_positive(quantity)
    logger.info("Attempting to reserve %s units for product %s", quantity, product_id)
    now = datetime.now(timezone.utc)

    result = await session.execute(
        update(inventory)
        .where(
            inventory.c.product_id == product_id,
            inventory.c.available_quantity >= quantity,
        )
        .values(
            available_quantity=inventory.c.available_quantity - quantity,
            reserved_quantity=inventory.c.reserved_quantity + quantity,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        record = await queries.get_inventory(session, product_id)
        if record is None:
            raise NotFoundError("Inventory", product_id)
        available = record["available_quantity"]
        logger.warning(
            "Insufficient stock for product %s. Available: %s, Requested: %s",
            product_id, available, quantity,
        )
        await publish_event(
            redis,
            CHANNEL,
            StockReservationFailed(
                product_id=product_id,
                quantity_requested=quantity,
                quantity_available=available,
                timestamp=now,
            ),
        )
        raise InsufficientStockError(product_id, quantity, available)

    record = await queries.get_inventory(session, product_id)
    await session.commit()
    logger.info(
        "Reserved %s units for product %s. Available: %s, Reserved: %s",
        quantity, product_id,
        record["available_quantity"], record["reserved_quantity"],
    )

    await publish_event(
        redis,
        CHANNEL,
        StockReserved(
            product_id=product_id,
            quantity=quantity,
            available_quantity=record["available_quantity"],
            reserved_quantity=record["reserved_quantity"],
            timestamp=now,
        ),
    )
    return record


async def release_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
) -> dict:
    """
    在庫解放コマンド（補償トランザクション）

    引き当て済みの数量を available に戻す。予約数を超える解放は InvalidState。
    """
    _require_positive(quantity)
    logger.info("Attempting to release %s units for product %s", quantity, product_id)
    now = datetime.now(timezone.utc)

    result = await session.execute(
        update(inventory)
        .where(
            inventory.c.product_id == product_id,
            inventory.c.reserved_quantity >= quantity,
        )
        .values(
            available_quantity=inventory.c.available_quantity + quantity,
            reserved_quantity=inventory.c.reserved_quantity - quantity,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        await _raise_reserved_shortfall(session, product_id, quantity, "release")

    record = await queries.get_inventory(session, product_id)
    await session.commit()
    logger.info(
        "Released %s units for product %s. Available: %s, Reserved: %s",
        quantity, product_id,
        record["available_quantity"], record["reserved_quantity"],
    )

    await publish_event(
        redis,
        CHANNEL,
        StockReleased(
            product_id=product_id,
            quantity=quantity,
            available_quantity=record["available_quantity"],
            reserved_quantity=record["reserved_quantity"],
            timestamp=now,
        ),
    )
    return record


async def confirm_reservation(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
) -> dict:
    """
    引き当て確定コマンド（決済成功時）

    available は引き当て時に減算済みなので変更しない。reserved だけを減らし、
    在庫から永久に除外する。
    """
    _require_positive(quantity)
    logger.info("Confirming reservation of %s units for product %s", quantity, product_id)
    now = datetime.now(timezone.utc)

    result = await session.execute(
        update(inventory)
        .where(
            inventory.c.product_id == product_id,
            inventory.c.reserved_quantity >= quantity,
        )
        .values(
            reserved_quantity=inventory.c.reserved_quantity - quantity,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        await _raise_reserved_shortfall(session, product_id, quantity, "confirm")

    record = await queries.get_inventory(session, product_id)
    await session.commit()
    logger.info(
        "Reservation confirmed for product %s. Reserved: %s",
        product_id, record["reserved_quantity"],
    )

    await publish_event(
        redis,
        CHANNEL,
        ReservationConfirmed(
            product_id=product_id,
            quantity=quantity,
            available_quantity=record["available_quantity"],
            reserved_quantity=record["reserved_quantity"],
            timestamp=now,
        ),
    )
    return record


async def set_available(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
) -> dict:
    """
    在庫登録/更新コマンド

    レコードがなければ reserved=0 で作成し、あれば available だけを上書きする。
    reserved は決して変更しない。
    """
    if quantity < 0:
        raise InvalidQuantityError(f"Quantity must not be negative, got {quantity}")
    logger.info("Setting available stock for product %s to %s", product_id, quantity)
    now = datetime.now(timezone.utc)

    overwrite = (
        update(inventory)
        .where(inventory.c.product_id == product_id)
        .values(available_quantity=quantity, updated_at=now)
    )
    result = await session.execute(overwrite)
    if result.rowcount == 0:
        try:
            await session.execute(
                insert(inventory).values(
                    product_id=product_id,
                    available_quantity=quantity,
                    reserved_quantity=0,
                    updated_at=now,
                )
            )
        except IntegrityError:
            # 同時に別リクエストが作成した → 上書きでやり直す
            await session.rollback()
            await session.execute(overwrite)

    record = await queries.get_inventory(session, product_id)
    await session.commit()

    await publish_event(
        redis,
        CHANNEL,
        StockLevelSet(
            product_id=product_id,
            available_quantity=record["available_quantity"],
            reserved_quantity=record["reserved_quantity"],
            timestamp=now,
        ),
    )
    return record


async def _raise_reserved_shortfall(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    operation: str,
) -> None:
    record = await queries.get_inventory(session, product_id)
    if record is None:
        raise NotFoundError("Inventory", product_id)
    logger.warning(
        "Attempted to %s more stock than reserved for product %s. Reserved: %s, Requested: %s",
        operation, product_id, record["reserved_quantity"], quantity,
    )
    raise InvalidStateError(
        f"Cannot {operation} more than reserved quantity for product {product_id}: "
        f"reserved={record['reserved_quantity']}, requested={quantity}"
    )
