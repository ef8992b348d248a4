"""
Shared — ドメイン例外

HTTP 層では shared.http がステータスコードに変換する。
重複コールバック（決済が既に確定済み）は例外ではなく、警告ログを出して
保存済みの決済をそのまま返す。
"""


class FulfillmentError(Exception):
    """業務ルール違反の基底クラス"""


class NotFoundError(FulfillmentError):
    """在庫・決済・注文・配送のいずれかが存在しない"""

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class InsufficientStockError(FulfillmentError):
    """引き当て数が利用可能在庫を超えている（状態は変更されない）"""

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested={requested}, available={available}"
        )


class InvalidStateError(FulfillmentError):
    """予約数を超える解放・確定や、決済・配送できない状態の注文など、操作の前提が崩れている"""


class InvalidQuantityError(FulfillmentError, ValueError):
    pass


class InvalidStateTransitionError(FulfillmentError):
    """状態遷移が許可されていない。source は遷移を阻んだ現在の状態。"""

    def __init__(self, source: str, target: str, message: str):
        self.source = source
        self.target = target
        super().__init__(message)


class DuplicateDeliveryError(FulfillmentError):
    """1 注文につき配送レコードは 1 件まで"""

    def __init__(self, order_id: str, tracking_number: str):
        self.order_id = order_id
        self.tracking_number = tracking_number
        super().__init__(
            f"Delivery already exists for order {order_id}: {tracking_number}"
        )


class DuplicatePaymentError(FulfillmentError):
    """
    1 注文につき決済は 1 件まで。

    引き当ては 1 回の確定か解放でしか解消できないため、2 件目の決済は
    他の注文の引き当てを消費してしまう。
    """

    def __init__(self, order_id: str, transaction_ref: str | None):
        self.order_id = order_id
        self.transaction_ref = transaction_ref
        super().__init__(
            f"Payment already exists for order {order_id}: {transaction_ref}"
        )


class SagaIncompleteError(FulfillmentError):
    """
    決済確定後の在庫ファンアウトが途中で失敗した。

    決済は終端状態のまま。完了済みのステップは saga log に記録されており、
    resume_saga で失敗したステップから再開できる。
    """

    def __init__(self, transaction_ref: str, step: int, cause: Exception):
        self.transaction_ref = transaction_ref
        self.step = step
        self.cause = cause
        super().__init__(
            f"Saga for payment {transaction_ref} stopped at step {step}: {cause}"
        )


class ReconciliationRequiredError(FulfillmentError):
    """
    EXECUTING のまま残ったステップがあり、在庫操作が適用済みかどうか判断できない。
    自動リトライすると二重確定/二重解放になり得るため手動での照合が必要。
    """

    def __init__(self, transaction_ref: str, steps: list[int]):
        self.transaction_ref = transaction_ref
        self.steps = steps
        super().__init__(
            f"Saga for payment {transaction_ref} has steps with unknown outcome: {steps}"
        )
