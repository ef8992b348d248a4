"""
Payment Saga Coordinator — 決済結果と在庫・注文の整合

Saga パターン（オーケストレーション型）:
  決済・在庫・注文をまたぐ分散トランザクションは存在しない。
  決済ステータスを 1 回だけ確定させ、その結果に応じて在庫台帳と注文に
  ファンアウトする。

  ┌──────────────────────────────────────────────────────────────┐
  │  1. transaction_ref で決済を取得（なければ NotFound）           │
  │  2. 既に終端状態 → 何もせず返す（重複 Webhook、警告ログのみ）     │
  │  3. 決済ステータスを確定 + ファンアウト計画を saga log に記録     │
  │     (同一トランザクション、status = PENDING を条件に UPDATE)     │
  │  4. SUCCESS         → 明細ごとに confirm_reservation → PAID      │
  │     FAILED/REFUNDED → 明細ごとに release_stock → PAYMENT_FAILED │
  │  5. 各ステップの結果を saga log に記録してから次へ進む             │
  └──────────────────────────────────────────────────────────────┘

ステップ 3 はステップ 4 より必ず先に永続化される。ファンアウト途中で
落ちても決済は終端状態のままなので、コールバックの再送は安全な no-op になる。
残りのステップは resume_saga で明示的に再開する。
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import redis.asyncio as aioredis
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..inventory.ledger import InventoryLedger
from ..order.lookup import OrderLookup
from ..order.models import OrderStatus
from ..shared.errors import (
    DuplicatePaymentError,
    FulfillmentError,
    InvalidQuantityError,
    InvalidStateError,
    InvalidStateTransitionError,
    NotFoundError,
    ReconciliationRequiredError,
    SagaIncompleteError,
)
from ..shared.events import publish_event
from . import commands, queries, saga_log
from .aggregate import Payment
from .events import (
    PaymentInitiated,
    PaymentSagaCompleted,
    PaymentSagaStalled,
    PaymentSettled,
)
from .gateway import PaymentGateway, SimulatedGateway
from .saga_log import SagaStep, StepStatus
from .status import AlreadySettled, PaymentStatus, Rejected, resolve_transition

logger = logging.getLogger(__name__)


class PaymentSagaCoordinator:
    """決済 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: InventoryLedger,
        orders: OrderLookup,
        gateway: PaymentGateway | None = None,
        redis: aioredis.Redis | None = None,
        gateway_timeout: float = 10.0,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.orders = orders
        self.gateway = gateway or SimulatedGateway()
        self.redis = redis
        self.gateway_timeout = gateway_timeout

    # ── 決済の開始 ───────────────────────────────

    async def initiate_payment(self, order_id: str, amount: Decimal) -> Payment:
        """
        PENDING の決済を作成し、ゲートウェイの結果をコールバックとして処理する。

        ゲートウェイが gateway_timeout 内に応答しなければ決済は PENDING のまま返す。
        結果は後から process_gateway_callback で届けてよい。
        """
        if amount <= 0:
            raise InvalidQuantityError(f"Payment amount must be positive, got {amount}")
        logger.info("Initiating payment for order %s, amount %s", order_id, amount)

        order = await self.orders.get_order(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if order["status"] != OrderStatus.PENDING.value:
            # 引き当てを保持しているのは PENDING の注文だけ
            raise InvalidStateError(
                f"Order {order_id} is {order['status']}; only PENDING orders can be paid"
            )

        async with self.session_factory() as session:
            existing = await queries.get_payment_by_order(session, order_id)
            if existing is not None:
                logger.warning(
                    "Order %s already has payment %s (%s)",
                    order_id, existing.transaction_ref, existing.status.value,
                )
                raise DuplicatePaymentError(order_id, existing.transaction_ref)
            try:
                payment = await commands.create_payment(
                    session, order_id, order["user_id"], amount
                )
                await session.commit()
            except IntegrityError:
                # 同時に別の initiate_payment が同じ注文の決済を作った
                await session.rollback()
                existing = await queries.get_payment_by_order(session, order_id)
                raise DuplicatePaymentError(
                    order_id, existing.transaction_ref if existing else None
                )
        logger.info(
            "Payment initiated and marked as PENDING. TransactionRef: %s",
            payment.transaction_ref,
        )
        await publish_event(
            self.redis,
            "payment_events",
            PaymentInitiated(
                transaction_ref=payment.transaction_ref,
                order_id=order_id,
                user_id=payment.user_id,
                amount=amount,
                timestamp=payment.created_at,
            ),
        )

        try:
            outcome = await asyncio.wait_for(
                self.gateway.authorize(payment.transaction_ref, amount),
                timeout=self.gateway_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Gateway did not answer within %ss for %s; payment stays PENDING",
                self.gateway_timeout, payment.transaction_ref,
            )
            return payment

        return await self.process_gateway_callback(
            payment.transaction_ref, outcome.status, outcome.response
        )

    # ── ゲートウェイからのコールバック ───────────────

    async def process_gateway_callback(
        self,
        transaction_ref: str,
        new_status: PaymentStatus,
        gateway_response: str | None = None,
    ) -> Payment:
        logger.info(
            "Processing gateway callback for %s with status %s",
            transaction_ref, new_status.value,
        )
        payment = await self._load_payment(transaction_ref)

        transition = resolve_transition(payment.status, new_status)
        if isinstance(transition, AlreadySettled):
            logger.warning(
                "Payment %s already processed with status %s; ignoring %s",
                transaction_ref, payment.status.value, new_status.value,
            )
            return payment
        if isinstance(transition, Rejected):
            raise InvalidStateTransitionError(
                payment.status.value, new_status.value, transition.reason
            )

        lines = await self.orders.get_line_items(payment.order_id)
        steps = saga_log.plan_steps(transition.status, lines)

        async with self.session_factory() as session:
            settled = await commands.settle_payment(
                session, transaction_ref, transition.status, gateway_response
            )
            if not settled:
                # 別のコールバックが先に確定させた
                await session.rollback()
                logger.warning("Payment %s was settled concurrently", transaction_ref)
                return await self._load_payment(transaction_ref)
            await saga_log.record_plan(session, transaction_ref, steps)
            await session.commit()

        payment = await self._load_payment(transaction_ref)
        logger.info(
            "Payment %s for order %s settled as %s",
            transaction_ref, payment.order_id, payment.status.value,
        )
        await publish_event(
            self.redis,
            "payment_events",
            PaymentSettled(
                transaction_ref=transaction_ref,
                order_id=payment.order_id,
                status=payment.status.value,
                timestamp=payment.updated_at,
            ),
        )

        await self._run_steps(payment, steps)
        return payment

    # ── 再開・検出 ───────────────────────────────

    async def resume_saga(self, transaction_ref: str) -> Payment:
        """
        途中で止まったファンアウトを再開する。

        COMPLETED のステップは飛ばし、PLANNED / FAILED のステップを実行する。
        在庫ステップが EXECUTING のまま残っていれば結果が不明なので
        ReconciliationRequiredError を送出し、何も実行しない。
        注文ステータス更新は上書きなので EXECUTING でも再実行してよい。
        """
        payment = await self._load_payment(transaction_ref)
        async with self.session_factory() as session:
            steps = await saga_log.load_steps(session, transaction_ref)

        unknown = [
            s.step for s in steps
            if s.status is StepStatus.EXECUTING and s.touches_inventory
        ]
        if unknown:
            logger.warning(
                "Saga %s has inventory steps with unknown outcome: %s",
                transaction_ref, unknown,
            )
            raise ReconciliationRequiredError(transaction_ref, unknown)

        remaining = [s for s in steps if s.status is not StepStatus.COMPLETED]
        if not remaining:
            logger.info("Saga %s has nothing left to resume", transaction_ref)
            return payment

        logger.info(
            "Resuming saga %s from step %s (%s steps left)",
            transaction_ref, remaining[0].step, len(remaining),
        )
        await self._run_steps(payment, steps)
        return payment

    async def find_incomplete_sagas(self) -> list[dict]:
        """終端状態なのにファンアウトが完了していない決済の一覧。"""
        async with self.session_factory() as session:
            refs = await saga_log.find_incomplete(session)
            result = []
            for ref in refs:
                payment = await queries.get_payment(session, ref)
                steps = await saga_log.load_steps(session, ref)
                result.append(
                    {
                        "transaction_ref": ref,
                        "order_id": payment.order_id if payment else None,
                        "payment_status": payment.status.value if payment else None,
                        "steps": [
                            s.to_dict() for s in steps
                            if s.status is not StepStatus.COMPLETED
                        ],
                    }
                )
            return result

    async def get_saga_steps(self, transaction_ref: str) -> list[SagaStep]:
        async with self.session_factory() as session:
            return await saga_log.load_steps(session, transaction_ref)

    # ── 参照 ─────────────────────────────────────

    async def get_payment(self, transaction_ref: str) -> Payment:
        return await self._load_payment(transaction_ref)

    async def get_payment_details(self, order_id: str) -> dict:
        """
        注文の決済を返す。注文情報の付加は失敗しても致命的ではなく、
        その場合 order は None になる。
        """
        logger.info("Fetching payment details for order %s", order_id)
        async with self.session_factory() as session:
            payment = await queries.get_payment_by_order(session, order_id)
        if payment is None:
            raise NotFoundError("Payment", order_id)

        details = payment.to_dict()
        try:
            details["order"] = await self.orders.get_order(order_id)
        except (httpx.HTTPError, SQLAlchemyError, ValueError) as e:
            logger.warning("Could not enrich payment %s with order: %s", payment.transaction_ref, e)
            details["order"] = None
        return details

    # ── 内部処理 ─────────────────────────────────

    async def _load_payment(self, transaction_ref: str) -> Payment:
        async with self.session_factory() as session:
            payment = await queries.get_payment(session, transaction_ref)
        if payment is None:
            raise NotFoundError("Payment", transaction_ref)
        return payment

    async def _run_steps(self, payment: Payment, steps: list[SagaStep]) -> None:
        for step in steps:
            if step.status is StepStatus.COMPLETED:
                continue

            await self._mark(payment.transaction_ref, step, StepStatus.EXECUTING)
            try:
                await self._apply(payment, step)
            except FulfillmentError as e:
                # 呼び出し先が拒否した → 変更は適用されていない
                await self._mark(payment.transaction_ref, step, StepStatus.FAILED, str(e))
                logger.error(
                    "Saga %s failed at step %s (%s): %s",
                    payment.transaction_ref, step.step, step.action.value, e,
                )
                await self._publish_stalled(payment, step, str(e))
                raise SagaIncompleteError(payment.transaction_ref, step.step, e) from e
            except Exception as e:
                # 結果不明のまま EXECUTING で残す
                logger.exception(
                    "Saga %s step %s (%s) ended with unknown outcome",
                    payment.transaction_ref, step.step, step.action.value,
                )
                await self._publish_stalled(payment, step, repr(e))
                raise
            await self._mark(payment.transaction_ref, step, StepStatus.COMPLETED)

        logger.info("Saga %s completed (%s steps)", payment.transaction_ref, len(steps))
        await publish_event(
            self.redis,
            "saga_events",
            PaymentSagaCompleted(
                transaction_ref=payment.transaction_ref,
                order_id=payment.order_id,
                steps=len(steps),
                timestamp=datetime.now(timezone.utc),
            ),
        )

    async def _apply(self, payment: Payment, step: SagaStep) -> None:
        if step.action is saga_log.SagaAction.CONFIRM_STOCK:
            await self.ledger.confirm_reservation(step.product_id, step.quantity)
        elif step.action is saga_log.SagaAction.RELEASE_STOCK:
            await self.ledger.release_stock(step.product_id, step.quantity)
        else:
            await self.orders.set_status(payment.order_id, step.action.order_status)

    async def _mark(
        self,
        transaction_ref: str,
        step: SagaStep,
        status: StepStatus,
        error: str | None = None,
    ) -> None:
        async with self.session_factory() as session:
            await saga_log.mark_step(session, transaction_ref, step.step, status, error)
            await session.commit()
        step.status = status
        step.error = error

    async def _publish_stalled(self, payment: Payment, step: SagaStep, error: str) -> None:
        await publish_event(
            self.redis,
            "saga_events",
            PaymentSagaStalled(
                transaction_ref=payment.transaction_ref,
                order_id=payment.order_id,
                step=step.step,
                action=step.action.value,
                error=error,
                timestamp=datetime.now(timezone.utc),
            ),
        )
