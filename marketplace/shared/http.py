"""
Shared — ドメイン例外を HTTP レスポンスに変換する

各サービスの main.py で install_error_handlers(app) を呼ぶ。
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .errors import (
    DuplicateDeliveryError,
    DuplicatePaymentError,
    FulfillmentError,
    InsufficientStockError,
    InvalidQuantityError,
    InvalidStateError,
    InvalidStateTransitionError,
    NotFoundError,
    ReconciliationRequiredError,
    SagaIncompleteError,
)

STATUS_CODES: dict[type[FulfillmentError], int] = {
    NotFoundError: 404,
    InsufficientStockError: 409,
    InvalidStateError: 409,
    InvalidQuantityError: 422,
    InvalidStateTransitionError: 400,
    DuplicateDeliveryError: 409,
    DuplicatePaymentError: 409,
    SagaIncompleteError: 409,
    ReconciliationRequiredError: 409,
}


async def _handle_fulfillment_error(request: Request, exc: FulfillmentError):
    status_code = STATUS_CODES.get(type(exc), 400)
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InvalidStateTransitionError):
        body["source_status"] = exc.source
    return JSONResponse(status_code=status_code, content=body)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FulfillmentError, _handle_fulfillment_error)
