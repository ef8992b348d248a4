"""
Order Placement Saga — 注文作成と在庫引き当て

Saga パターン（オーケストレーション型）:
  注文は全明細の在庫が引き当てられて初めて有効になる。
  どこかの明細で引き当てに失敗したら、それまでに引き当てた明細を
  逆順に解放し（補償トランザクション）、注文をキャンセルする。

  ┌─────────────────────────────────────────────────────────┐
  │  1. 注文を作成 (PENDING)                                  │
  │  2. 明細ごとに在庫を引き当て                               │
  │     ├─ 全て成功 → 注文は PENDING のまま決済待ち           │
  │     └─ 失敗     → 引き当て済み明細を解放し、注文をキャンセル │
  │  3. 補償が完了しない場合 → 注文を ON_HOLD にして照合待ち    │
  └─────────────────────────────────────────────────────────┘

キャンセルするのは全ての引き当てが解放済みだと確認できたときだけ。
引き当ての結果が不明な明細（業務エラー以外の例外）や、解放に失敗した
明細が残る注文は ON_HOLD になり、saga_events にログ付きで通知される。
ON_HOLD の注文は決済できない。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from ..inventory.ledger import InventoryLedger
from ..shared.errors import FulfillmentError
from ..shared.events import publish_event
from . import commands
from .models import LineItem, OrderStatus

logger = logging.getLogger(__name__)


class OrderPlacementFinished(BaseModel):
    order_id: str
    outcome: str
    saga_log: list[dict]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderPlacementSaga:
    """注文作成 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: InventoryLedger,
        redis: aioredis.Redis | None = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.redis = redis

    async def execute(
        self,
        order_id: str,
        user_id: str,
        items: list[LineItem],
    ) -> dict:
        saga_log: list[dict] = []

        # ── Step 1: 注文を作成 ──────────────────────
        saga_log.append(
            {"step": 1, "action": "CreateOrder", "status": "EXECUTING", "timestamp": _now()}
        )
        async with self.session_factory() as session:
            await commands.create_order(session, self.redis, order_id, user_id, items)
        saga_log[-1]["status"] = "COMPLETED"

        # ── Step 2..n: 明細ごとに在庫を引き当て ────────
        reserved: list[LineItem] = []
        for item in items:
            saga_log.append(
                {
                    "step": len(saga_log) + 1,
                    "action": "ReserveStock",
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "status": "EXECUTING",
                    "timestamp": _now(),
                }
            )
            try:
                await self.ledger.reserve_stock(item.product_id, item.quantity)
            except FulfillmentError as e:
                # 台帳が拒否した → この明細は引き当てられていない
                saga_log[-1]["status"] = "FAILED"
                saga_log[-1]["error"] = str(e)
                logger.warning("Reservation failed for order %s: %s", order_id, e)
                outcome = await self._compensate(
                    order_id, reserved, saga_log, reason=str(e), outcome_known=True
                )
                return {
                    "success": False,
                    "order_id": order_id,
                    "outcome": outcome,
                    "saga_log": saga_log,
                }
            except Exception as e:
                # 引き当てが適用されたか分からない
                saga_log[-1]["status"] = "UNKNOWN"
                saga_log[-1]["error"] = repr(e)
                logger.exception(
                    "Reservation of %s for order %s ended with unknown outcome",
                    item.product_id, order_id,
                )
                await self._compensate(
                    order_id, reserved, saga_log, reason=repr(e), outcome_known=False
                )
                raise
            saga_log[-1]["status"] = "COMPLETED"
            reserved.append(item)

        await self._publish(order_id, "COMPLETED", saga_log)
        return {
            "success": True,
            "order_id": order_id,
            "outcome": "COMPLETED",
            "saga_log": saga_log,
        }

    async def _compensate(
        self,
        order_id: str,
        reserved: list[LineItem],
        saga_log: list[dict],
        reason: str,
        outcome_known: bool,
    ) -> str:
        """
        引き当て済み明細を逆順に解放する。

        全て解放でき、失敗した明細が引き当てられていないと分かっていれば
        注文をキャンセルする。そうでなければ ON_HOLD にする。
        """
        released_all = True
        for item in reversed(reserved):
            saga_log.append(
                {
                    "step": len(saga_log) + 1,
                    "action": "ReleaseStock (COMPENSATING)",
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "status": "EXECUTING",
                    "timestamp": _now(),
                }
            )
            try:
                await self.ledger.release_stock(item.product_id, item.quantity)
                saga_log[-1]["status"] = "COMPLETED"
            except Exception as e:
                logger.exception("Compensation failed for order %s", order_id)
                saga_log[-1]["status"] = "FAILED"
                saga_log[-1]["error"] = str(e)
                released_all = False

        if released_all and outcome_known:
            action, status, outcome = (
                "CancelOrder (COMPENSATING)",
                OrderStatus.CANCELLED,
                "COMPENSATED",
            )
        else:
            action, status, outcome = "HoldOrder", OrderStatus.ON_HOLD, "NEEDS_RECONCILIATION"
            logger.error(
                "Order %s put on hold: reservations could not be fully released", order_id
            )

        saga_log.append(
            {
                "step": len(saga_log) + 1,
                "action": action,
                "reason": reason,
                "status": "EXECUTING",
                "timestamp": _now(),
            }
        )
        async with self.session_factory() as session:
            await commands.set_order_status(session, self.redis, order_id, status)
        saga_log[-1]["status"] = "COMPLETED"

        await self._publish(order_id, outcome, saga_log)
        return outcome

    async def _publish(self, order_id: str, outcome: str, saga_log: list[dict]) -> None:
        await publish_event(
            self.redis,
            "saga_events",
            OrderPlacementFinished(order_id=order_id, outcome=outcome, saga_log=saga_log),
        )
