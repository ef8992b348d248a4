"""
HttpOrderLookup のテスト（httpx.MockTransport で Order Service を模擬）
"""

import json

import httpx
import pytest

from marketplace.order.lookup import HttpOrderLookup
from marketplace.order.models import LineItem, OrderStatus
from marketplace.shared.errors import InvalidStateTransitionError, NotFoundError

ORDER = {"id": "order-1", "user_id": "user-1", "status": "PENDING", "items": []}


def order_service(requests: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path
        if "missing" in path:
            return httpx.Response(404, json={"detail": "Order not found"})
        if path == "/queries/orders/order-1":
            return httpx.Response(200, json=ORDER)
        if path == "/queries/orders/order-1/items":
            return httpx.Response(
                200,
                json=[
                    {"product_id": "P", "quantity": 2},
                    {"product_id": "Q", "quantity": 1},
                ],
            )
        if path == "/queries/orders/garbled":
            return httpx.Response(200, text="<html>maintenance</html>")
        if path == "/commands/orders/closed/status":
            return httpx.Response(
                400,
                json={
                    "detail": "Order closed is CANCELLED; cannot change status to PAID",
                    "error": "InvalidStateTransitionError",
                    "source_status": "CANCELLED",
                },
            )
        if path == "/commands/orders/order-1/status":
            return httpx.Response(200, json={"order_id": "order-1", "status": "PAID"})
        return httpx.Response(500)

    return handler


@pytest.fixture
def requests():
    return []


@pytest.fixture
def lookup(requests):
    return HttpOrderLookup(
        "http://orders.local/",
        transport=httpx.MockTransport(order_service(requests)),
    )


@pytest.mark.asyncio
async def test_get_order(lookup):
    assert await lookup.get_order("order-1") == ORDER


@pytest.mark.asyncio
async def test_get_missing_order_returns_none(lookup):
    assert await lookup.get_order("missing") is None


@pytest.mark.asyncio
async def test_get_line_items(lookup):
    assert await lookup.get_line_items("order-1") == [LineItem("P", 2), LineItem("Q", 1)]


@pytest.mark.asyncio
async def test_line_items_of_missing_order(lookup):
    with pytest.raises(NotFoundError):
        await lookup.get_line_items("missing")


@pytest.mark.asyncio
async def test_set_status_posts_new_status(lookup, requests):
    await lookup.set_status("order-1", OrderStatus.PAID)

    request = requests[-1]
    assert request.method == "POST"
    assert str(request.url) == "http://orders.local/commands/orders/order-1/status"
    assert json.loads(request.content) == {"status": "PAID"}


@pytest.mark.asyncio
async def test_server_error_propagates(lookup):
    with pytest.raises(httpx.HTTPStatusError):
        await lookup.get_order("order-2")


@pytest.mark.asyncio
async def test_refused_status_change_is_raised(lookup):
    with pytest.raises(InvalidStateTransitionError) as exc_info:
        await lookup.set_status("closed", OrderStatus.PAID)

    assert exc_info.value.source == "CANCELLED"
    assert exc_info.value.target == "PAID"
    assert "cannot change status to PAID" in str(exc_info.value)


@pytest.mark.asyncio
async def test_non_json_body_raises_value_error(lookup):
    with pytest.raises(ValueError):
        await lookup.get_order("garbled")
