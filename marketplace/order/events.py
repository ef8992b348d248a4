"""
Order Service — イベント定義
"""

from datetime import datetime

from pydantic import BaseModel


class OrderLine(BaseModel):
    product_id: str
    quantity: int


class OrderCreated(BaseModel):
    """注文が作成された（在庫引き当て前、status=PENDING）"""
    order_id: str
    user_id: str
    items: list[OrderLine]
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが変わった（PAID / PAYMENT_FAILED / CANCELLED など）"""
    order_id: str
    previous_status: str
    status: str
    timestamp: datetime
