"""
Logistics Service — イベント定義
"""

from datetime import datetime

from pydantic import BaseModel


class DeliveryCreated(BaseModel):
    """配送レコードが作成された（1 注文につき 1 件）"""
    tracking_number: str
    order_id: str
    estimated_delivery_date: datetime | None
    timestamp: datetime


class DeliveryStatusChanged(BaseModel):
    tracking_number: str
    order_id: str
    previous_status: str
    status: str
    current_location: str | None
    timestamp: datetime


class DeliveryCancelled(BaseModel):
    tracking_number: str
    order_id: str
    previous_status: str
    reason: str
    timestamp: datetime
