"""
Payment Service — 決済レコードのコマンド

settle_payment は status = 'PENDING' を条件にした UPDATE で、
終端状態への遷移を 1 回だけに制限する（重複 Webhook の同時到着対策）。
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.db import payments
from .aggregate import Payment
from .status import PaymentStatus


async def create_payment(
    session: AsyncSession,
    order_id: str,
    user_id: str,
    amount: Decimal,
) -> Payment:
    """PENDING の決済を作成する。transaction_ref は毎回新しく採番する。"""
    now = datetime.now(timezone.utc)
    payment = Payment(
        transaction_ref=str(uuid4()),
        order_id=order_id,
        user_id=user_id,
        amount=amount,
        status=PaymentStatus.PENDING,
        gateway_response="SIMULATED_INITIATED",
        created_at=now,
        updated_at=now,
    )
    await session.execute(
        insert(payments).values(
            transaction_ref=payment.transaction_ref,
            order_id=payment.order_id,
            user_id=payment.user_id,
            amount=payment.amount,
            status=payment.status.value,
            gateway_response=payment.gateway_response,
            created_at=now,
            updated_at=now,
        )
    )
    return payment


async def settle_payment(
    session: AsyncSession,
    transaction_ref: str,
    status: PaymentStatus,
    gateway_response: str | None,
) -> bool:
    """
    PENDING の決済を終端状態にする。

    戻り値が False なら別の呼び出しが先に確定させている。
    コミットは呼び出し側が saga log と同じトランザクションで行う。
    """
    result = await session.execute(
        update(payments)
        .where(
            payments.c.transaction_ref == transaction_ref,
            payments.c.status == PaymentStatus.PENDING.value,
        )
        .values(
            status=status.value,
            gateway_response=gateway_response,
            updated_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount == 1
