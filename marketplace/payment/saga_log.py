"""
Payment Service — Saga ログ

決済確定後のファンアウト（明細ごとの在庫確定/解放 → 注文ステータス更新）を
ステップ単位で記録する。決済の確定と同じトランザクションで全ステップを
PLANNED として書き込むため、途中でプロセスが落ちても未完了の Saga を検出できる。

ステップの状態:
    PLANNED   → まだ実行していない
    EXECUTING → 在庫/注文への呼び出し中（結果未記録）
    COMPLETED → 完了
    FAILED    → 呼び出し先が業務エラーで拒否した（状態は変更されていない）

(transaction_ref, step) の UNIQUE 制約で同じ計画が二重に記録されることはない。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..order.models import LineItem, OrderStatus
from ..shared.db import payment_saga_steps
from .status import PaymentStatus


class SagaAction(str, Enum):
    CONFIRM_STOCK = "CONFIRM_STOCK"
    RELEASE_STOCK = "RELEASE_STOCK"
    MARK_ORDER_PAID = "MARK_ORDER_PAID"
    MARK_ORDER_PAYMENT_FAILED = "MARK_ORDER_PAYMENT_FAILED"

    @property
    def order_status(self) -> OrderStatus | None:
        return {
            SagaAction.MARK_ORDER_PAID: OrderStatus.PAID,
            SagaAction.MARK_ORDER_PAYMENT_FAILED: OrderStatus.PAYMENT_FAILED,
        }.get(self)


class StepStatus(str, Enum):
    PLANNED = "PLANNED"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class SagaStep:
    step: int
    action: SagaAction
    product_id: str | None = None
    quantity: int | None = None
    status: StepStatus = StepStatus.PLANNED
    error: str | None = None

    @property
    def touches_inventory(self) -> bool:
        return self.action in (SagaAction.CONFIRM_STOCK, SagaAction.RELEASE_STOCK)

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "action": self.action.value,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "status": self.status.value,
            "error": self.error,
        }


def plan_steps(outcome: PaymentStatus, lines: list[LineItem]) -> list[SagaStep]:
    """
    決済結果からファンアウトの計画を作る。

    SUCCESS          : 明細ごとに CONFIRM_STOCK → MARK_ORDER_PAID
    FAILED/REFUNDED  : 明細ごとに RELEASE_STOCK → MARK_ORDER_PAYMENT_FAILED
    """
    if outcome is PaymentStatus.SUCCESS:
        line_action, order_action = SagaAction.CONFIRM_STOCK, SagaAction.MARK_ORDER_PAID
    else:
        line_action, order_action = (
            SagaAction.RELEASE_STOCK,
            SagaAction.MARK_ORDER_PAYMENT_FAILED,
        )
    steps = [
        SagaStep(step=i, action=line_action, product_id=line.product_id, quantity=line.quantity)
        for i, line in enumerate(lines, start=1)
    ]
    steps.append(SagaStep(step=len(lines) + 1, action=order_action))
    return steps


async def record_plan(
    session: AsyncSession,
    transaction_ref: str,
    steps: list[SagaStep],
) -> None:
    now = datetime.now(timezone.utc)
    await session.execute(
        insert(payment_saga_steps),
        [
            {
                "transaction_ref": transaction_ref,
                "step": s.step,
                "action": s.action.value,
                "product_id": s.product_id,
                "quantity": s.quantity,
                "status": s.status.value,
                "error": None,
                "created_at": now,
                "updated_at": now,
            }
            for s in steps
        ],
    )


async def mark_step(
    session: AsyncSession,
    transaction_ref: str,
    step: int,
    status: StepStatus,
    error: str | None = None,
) -> None:
    await session.execute(
        update(payment_saga_steps)
        .where(
            payment_saga_steps.c.transaction_ref == transaction_ref,
            payment_saga_steps.c.step == step,
        )
        .values(status=status.value, error=error, updated_at=datetime.now(timezone.utc))
    )


async def load_steps(session: AsyncSession, transaction_ref: str) -> list[SagaStep]:
    """指定決済のステップを step 順に読み出す。"""
    result = await session.execute(
        select(payment_saga_steps)
        .where(payment_saga_steps.c.transaction_ref == transaction_ref)
        .order_by(payment_saga_steps.c.step)
    )
    return [
        SagaStep(
            step=row.step,
            action=SagaAction(row.action),
            product_id=row.product_id,
            quantity=row.quantity,
            status=StepStatus(row.status),
            error=row.error,
        )
        for row in result.fetchall()
    ]


async def find_incomplete(session: AsyncSession) -> list[str]:
    """COMPLETED でないステップを持つ決済の transaction_ref 一覧。"""
    result = await session.execute(
        select(payment_saga_steps.c.transaction_ref)
        .where(payment_saga_steps.c.status != StepStatus.COMPLETED.value)
        .distinct()
        .order_by(payment_saga_steps.c.transaction_ref)
    )
    return [row.transaction_ref for row in result.fetchall()]
