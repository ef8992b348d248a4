"""
Order Service — 注文ステータスと明細

注文そのものは外部の集約。Saga が変更するのは status だけ。

CANCELLED / PAYMENT_FAILED / RETURNED は閉じた状態で、同じ状態への再設定
（Saga ステップの再実行）以外は受け付けない。
ON_HOLD は注文作成 Saga の補償が完了しなかった注文で、在庫の照合待ち。
"""

from dataclasses import dataclass
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"
    ON_HOLD = "ON_HOLD"

    @property
    def is_closed(self) -> bool:
        return self in CLOSED_STATUSES


CLOSED_STATUSES = frozenset(
    {OrderStatus.CANCELLED, OrderStatus.PAYMENT_FAILED, OrderStatus.RETURNED}
)

# 配送を作成できる注文
SHIPPABLE_STATUSES = frozenset(
    {OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.SHIPPED}
)


@dataclass(frozen=True)
class LineItem:
    product_id: str
    quantity: int
