"""
Payment Saga のテスト

決済の確定 → 在庫の確定/解放 → 注文ステータス更新 の流れと、
重複コールバック・途中失敗・再開の扱いを確認する。
"""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from conftest import RecordingLedger
from marketplace.order.models import LineItem, OrderStatus
from marketplace.order.placement import OrderPlacementSaga
from marketplace.payment import saga_log
from marketplace.payment.coordinator import PaymentSagaCoordinator
from marketplace.payment.gateway import SimulatedGateway
from marketplace.payment.saga_log import StepStatus
from marketplace.payment.status import PaymentStatus
from marketplace.shared.db import payments as payments_table
from marketplace.shared.errors import (
    DuplicatePaymentError,
    InvalidQuantityError,
    InvalidStateError,
    InvalidStateTransitionError,
    NotFoundError,
    ReconciliationRequiredError,
    SagaIncompleteError,
)


def make_coordinator(session_factory, ledger, orders, redis, gateway=None, timeout=0.05):
    return PaymentSagaCoordinator(
        session_factory,
        ledger,
        orders,
        gateway=gateway or SimulatedGateway(delay=5.0),
        redis=redis,
        gateway_timeout=timeout,
    )


@pytest.fixture
def coordinator(session_factory, ledger, orders, redis):
    # ゲートウェイは応答しない → 決済は PENDING のまま、結果はコールバックで渡す
    return make_coordinator(session_factory, ledger, orders, redis)


@pytest.fixture
async def placed_order(session_factory, ledger, redis):
    await ledger.set_available("P", 10)
    await ledger.set_available("Q", 5)
    saga = OrderPlacementSaga(session_factory, ledger, redis)
    result = await saga.execute("order-1", "user-1", [LineItem("P", 2), LineItem("Q", 1)])
    assert result["success"]
    return "order-1"


@pytest.fixture
async def pending_payment(coordinator, placed_order):
    payment = await coordinator.initiate_payment(placed_order, Decimal("49.99"))
    assert payment.status is PaymentStatus.PENDING
    return payment


async def order_status(orders, order_id):
    return (await orders.get_order(order_id))["status"]


# ── 決済の開始 ───────────────────────────────────


@pytest.mark.asyncio
async def test_initiate_payment_with_successful_gateway(
    session_factory, ledger, orders, redis, placed_order, stock
):
    coordinator = make_coordinator(
        session_factory, ledger, orders, redis, gateway=SimulatedGateway(), timeout=1.0
    )

    payment = await coordinator.initiate_payment(placed_order, Decimal("49.99"))

    assert payment.status is PaymentStatus.SUCCESS
    assert payment.gateway_response == "SIMULATED_SUCCESS"
    assert payment.amount == Decimal("49.99")
    assert payment.user_id == "user-1"
    assert await stock("P") == (8, 0)
    assert await stock("Q") == (4, 0)
    assert await order_status(orders, placed_order) == OrderStatus.PAID.value


@pytest.mark.asyncio
async def test_gateway_timeout_leaves_payment_pending(coordinator, pending_payment, ledger, stock):
    stored = await coordinator.get_payment(pending_payment.transaction_ref)

    assert stored.status is PaymentStatus.PENDING
    assert stored.gateway_response == "SIMULATED_INITIATED"
    assert ledger.calls == []
    assert await stock("P") == (8, 2)
    assert await coordinator.get_saga_steps(pending_payment.transaction_ref) == []


@pytest.mark.asyncio
async def test_initiate_payment_for_unknown_order(coordinator, session_factory):
    with pytest.raises(NotFoundError) as exc_info:
        await coordinator.initiate_payment("missing", Decimal("10"))
    assert exc_info.value.entity == "Order"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
async def test_initiate_payment_requires_positive_amount(coordinator, placed_order, amount):
    with pytest.raises(InvalidQuantityError):
        await coordinator.initiate_payment(placed_order, amount)


# ── コールバック ─────────────────────────────────


@pytest.mark.asyncio
async def test_success_confirms_every_line_and_marks_order_paid(
    coordinator, pending_payment, ledger, orders, stock
):
    payment = await coordinator.process_gateway_callback(
        pending_payment.transaction_ref, PaymentStatus.SUCCESS, "OK"
    )

    assert payment.status is PaymentStatus.SUCCESS
    assert payment.gateway_response == "OK"
    assert ledger.calls == [("confirm", "P", 2), ("confirm", "Q", 1)]
    assert await stock("P") == (8, 0)
    assert await stock("Q") == (4, 0)
    assert await order_status(orders, "order-1") == OrderStatus.PAID.value

    steps = await coordinator.get_saga_steps(payment.transaction_ref)
    assert [s.status for s in steps] == [StepStatus.COMPLETED] * 3


@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", [PaymentStatus.FAILED, PaymentStatus.REFUNDED])
async def test_failure_releases_every_line(
    coordinator, pending_payment, ledger, orders, stock, outcome
):
    payment = await coordinator.process_gateway_callback(
        pending_payment.transaction_ref, outcome
    )

    assert payment.status is outcome
    assert ledger.calls == [("release", "P", 2), ("release", "Q", 1)]
    assert await stock("P") == (10, 0)
    assert await stock("Q") == (5, 0)
    assert await order_status(orders, "order-1") == OrderStatus.PAYMENT_FAILED.value


@pytest.mark.asyncio
async def test_duplicate_callback_is_a_no_op(coordinator, pending_payment, ledger, stock):
    ref = pending_payment.transaction_ref
    await coordinator.process_gateway_callback(ref, PaymentStatus.SUCCESS)
    calls = list(ledger.calls)

    again = await coordinator.process_gateway_callback(ref, PaymentStatus.SUCCESS)
    contradicting = await coordinator.process_gateway_callback(ref, PaymentStatus.FAILED)

    assert again.status is PaymentStatus.SUCCESS
    assert contradicting.status is PaymentStatus.SUCCESS
    assert ledger.calls == calls
    assert await stock("P") == (8, 0)


@pytest.mark.asyncio
async def test_second_payment_for_paid_order_is_rejected(
    session_factory, ledger, orders, redis, stock
):
    # A と B がそれぞれ P を 2 個ずつ引き当てている
    await ledger.set_available("P", 10)
    saga = OrderPlacementSaga(session_factory, ledger, redis)
    await saga.execute("order-a", "user-1", [LineItem("P", 2)])
    await saga.execute("order-b", "user-2", [LineItem("P", 2)])
    assert await stock("P") == (6, 4)

    coordinator = make_coordinator(
        session_factory, ledger, orders, redis, gateway=SimulatedGateway(), timeout=1.0
    )
    await coordinator.initiate_payment("order-a", Decimal("10"))
    assert await stock("P") == (6, 2)
    ledger.calls.clear()

    with pytest.raises(InvalidStateError):
        await coordinator.initiate_payment("order-a", Decimal("10"))

    # B の引き当ては残っている
    assert await stock("P") == (6, 2)
    assert ledger.calls == []
    assert await order_status(orders, "order-b") == OrderStatus.PENDING.value


@pytest.mark.asyncio
async def test_second_payment_while_first_is_pending(coordinator, pending_payment):
    with pytest.raises(DuplicatePaymentError) as exc_info:
        await coordinator.initiate_payment("order-1", Decimal("49.99"))
    assert exc_info.value.transaction_ref == pending_payment.transaction_ref


@pytest.mark.asyncio
async def test_concurrent_payments_for_one_order(coordinator, placed_order, session_factory):
    results = await asyncio.gather(
        coordinator.initiate_payment(placed_order, Decimal("10")),
        coordinator.initiate_payment(placed_order, Decimal("10")),
        return_exceptions=True,
    )

    payments = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(payments) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], DuplicatePaymentError)
    async with session_factory() as session:
        count = await session.scalar(
            select(func.count()).select_from(payments_table).where(
                payments_table.c.order_id == placed_order
            )
        )
    assert count == 1


@pytest.mark.asyncio
async def test_cancelled_order_cannot_be_paid(
    session_factory, ledger, orders, redis, stock
):
    await ledger.set_available("P", 3)
    saga = OrderPlacementSaga(session_factory, ledger, redis)
    await saga.execute("order-b", "user-2", [LineItem("P", 2)])
    result = await saga.execute("order-c", "user-3", [LineItem("P", 2)])
    assert result["outcome"] == "COMPENSATED"
    assert await stock("P") == (1, 2)

    coordinator = make_coordinator(
        session_factory, ledger, orders, redis, gateway=SimulatedGateway(), timeout=1.0
    )
    with pytest.raises(InvalidStateError):
        await coordinator.initiate_payment("order-c", Decimal("10"))

    assert await stock("P") == (1, 2)
    assert ledger.calls == []
    assert await order_status(orders, "order-c") == OrderStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_settlement_does_not_reopen_cancelled_order(
    coordinator, pending_payment, orders, stock
):
    # 決済待ちの間に注文がキャンセルされた
    await orders.set_status("order-1", OrderStatus.CANCELLED)

    with pytest.raises(SagaIncompleteError) as exc_info:
        await coordinator.process_gateway_callback(
            pending_payment.transaction_ref, PaymentStatus.SUCCESS
        )

    assert exc_info.value.step == 3
    assert await order_status(orders, "order-1") == OrderStatus.CANCELLED.value
    steps = await coordinator.get_saga_steps(pending_payment.transaction_ref)
    assert steps[2].status is StepStatus.FAILED
    assert "cannot change status to PAID" in steps[2].error


@pytest.mark.asyncio
async def test_concurrent_duplicate_callbacks_fan_out_once(
    coordinator, pending_payment, ledger, orders
):
    ref = pending_payment.transaction_ref

    results = await asyncio.gather(
        coordinator.process_gateway_callback(ref, PaymentStatus.SUCCESS),
        coordinator.process_gateway_callback(ref, PaymentStatus.SUCCESS),
    )

    assert all(p.status is PaymentStatus.SUCCESS for p in results)
    assert ledger.calls == [("confirm", "P", 2), ("confirm", "Q", 1)]
    assert await order_status(orders, "order-1") == OrderStatus.PAID.value


@pytest.mark.asyncio
async def test_callback_for_unknown_payment(coordinator):
    with pytest.raises(NotFoundError) as exc_info:
        await coordinator.process_gateway_callback("nope", PaymentStatus.SUCCESS)
    assert exc_info.value.entity == "Payment"


@pytest.mark.asyncio
async def test_callback_must_report_a_final_status(coordinator, pending_payment, ledger):
    with pytest.raises(InvalidStateTransitionError):
        await coordinator.process_gateway_callback(
            pending_payment.transaction_ref, PaymentStatus.PENDING
        )
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_settlement_publishes_events(coordinator, pending_payment, redis):
    await coordinator.process_gateway_callback(
        pending_payment.transaction_ref, PaymentStatus.SUCCESS
    )

    published = [
        (call.args[0], json.loads(call.args[1])["event_type"])
        for call in redis.publish.call_args_list
    ]
    assert ("payment_events", "PaymentInitiated") in published
    assert ("payment_events", "PaymentSettled") in published
    assert ("saga_events", "PaymentSagaCompleted") in published
    assert published.index(("payment_events", "PaymentSettled")) < published.index(
        ("saga_events", "PaymentSagaCompleted")
    )


# ── 途中失敗と再開 ───────────────────────────────


@pytest.fixture
async def half_reserved_payment(coordinator, ledger, create_order):
    """Q の引き当てが存在しない注文（2 行目の確定が失敗する）"""
    await ledger.set_available("P", 10)
    await ledger.set_available("Q", 5)
    await create_order("order-9", [("P", 2), ("Q", 1)])
    await ledger.reserve_stock("P", 2)
    payment = await coordinator.initiate_payment("order-9", Decimal("20"))
    return payment.transaction_ref


@pytest.mark.asyncio
async def test_mid_fan_out_failure_is_recorded(
    coordinator, half_reserved_payment, orders, stock, redis
):
    ref = half_reserved_payment

    with pytest.raises(SagaIncompleteError) as exc_info:
        await coordinator.process_gateway_callback(ref, PaymentStatus.SUCCESS)

    assert exc_info.value.step == 2
    assert (await coordinator.get_payment(ref)).status is PaymentStatus.SUCCESS
    assert await stock("P") == (8, 0)
    assert await order_status(orders, "order-9") == OrderStatus.PENDING.value

    steps = await coordinator.get_saga_steps(ref)
    assert [s.status for s in steps] == [
        StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.PLANNED,
    ]
    assert "Cannot confirm more than reserved" in steps[1].error

    incomplete = await coordinator.find_incomplete_sagas()
    assert [s["transaction_ref"] for s in incomplete] == [ref]
    assert incomplete[0]["payment_status"] == "SUCCESS"
    assert [s["step"] for s in incomplete[0]["steps"]] == [2, 3]

    event_types = [json.loads(c.args[1])["event_type"] for c in redis.publish.call_args_list]
    assert "PaymentSagaStalled" in event_types


@pytest.mark.asyncio
async def test_resume_continues_from_failed_step(
    coordinator, half_reserved_payment, ledger, orders, stock
):
    ref = half_reserved_payment
    with pytest.raises(SagaIncompleteError):
        await coordinator.process_gateway_callback(ref, PaymentStatus.SUCCESS)

    # 再送されたコールバックは何もしない
    await coordinator.process_gateway_callback(ref, PaymentStatus.SUCCESS)

    await ledger.reserve_stock("Q", 1)
    ledger.calls.clear()
    await coordinator.resume_saga(ref)

    assert ledger.calls == [("confirm", "Q", 1)]
    assert await stock("P") == (8, 0)
    assert await stock("Q") == (4, 0)
    assert await order_status(orders, "order-9") == OrderStatus.PAID.value
    assert await coordinator.find_incomplete_sagas() == []


@pytest.mark.asyncio
async def test_resume_of_completed_saga_does_nothing(coordinator, pending_payment, ledger):
    ref = pending_payment.transaction_ref
    await coordinator.process_gateway_callback(ref, PaymentStatus.SUCCESS)
    ledger.calls.clear()

    payment = await coordinator.resume_saga(ref)

    assert payment.status is PaymentStatus.SUCCESS
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_resume_refuses_inventory_step_with_unknown_outcome(
    coordinator, pending_payment, session_factory, ledger
):
    ref = pending_payment.transaction_ref
    await coordinator.process_gateway_callback(ref, PaymentStatus.SUCCESS)
    async with session_factory() as session:
        await saga_log.mark_step(session, ref, 2, StepStatus.EXECUTING)
        await session.commit()
    ledger.calls.clear()

    with pytest.raises(ReconciliationRequiredError) as exc_info:
        await coordinator.resume_saga(ref)

    assert exc_info.value.steps == [2]
    assert ledger.calls == []


class FlakyLedger(RecordingLedger):
    """confirm が結果不明のまま落ちる台帳"""

    async def confirm_reservation(self, product_id, quantity):
        self.calls.append(("confirm", product_id, quantity))
        raise RuntimeError("connection reset")


@pytest.mark.asyncio
async def test_unexpected_error_leaves_step_executing(
    session_factory, orders, redis, placed_order
):
    flaky = FlakyLedger(session_factory, redis)
    coordinator = make_coordinator(session_factory, flaky, orders, redis)
    payment = await coordinator.initiate_payment(placed_order, Decimal("5"))

    with pytest.raises(RuntimeError):
        await coordinator.process_gateway_callback(
            payment.transaction_ref, PaymentStatus.SUCCESS
        )

    steps = await coordinator.get_saga_steps(payment.transaction_ref)
    assert steps[0].status is StepStatus.EXECUTING
    with pytest.raises(ReconciliationRequiredError):
        await coordinator.resume_saga(payment.transaction_ref)


@pytest.mark.asyncio
async def test_resume_unknown_payment(coordinator):
    with pytest.raises(NotFoundError):
        await coordinator.resume_saga("nope")


# ── 参照 ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_payment_details_include_order(coordinator, pending_payment):
    details = await coordinator.get_payment_details("order-1")

    assert details["transaction_ref"] == pending_payment.transaction_ref
    assert details["amount"] == "49.99"
    assert details["order"]["id"] == "order-1"


class UnreachableOrders:
    def __init__(self, inner):
        self.inner = inner

    async def get_order(self, order_id):
        raise httpx.ConnectError("order service down")

    async def get_line_items(self, order_id):
        return await self.inner.get_line_items(order_id)

    async def set_status(self, order_id, status):
        await self.inner.set_status(order_id, status)


@pytest.mark.asyncio
async def test_payment_details_survive_order_lookup_failure(
    session_factory, ledger, orders, redis, pending_payment
):
    coordinator = make_coordinator(session_factory, ledger, UnreachableOrders(orders), redis)

    details = await coordinator.get_payment_details("order-1")

    assert details["status"] == "PENDING"
    assert details["order"] is None


@pytest.mark.asyncio
async def test_payment_details_for_order_without_payment(coordinator):
    with pytest.raises(NotFoundError):
        await coordinator.get_payment_details("order-1")
