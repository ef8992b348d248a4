"""
Payment Service — イベント定義

payment_events / saga_events チャネルに発行される。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class PaymentInitiated(BaseModel):
    """決済が PENDING で作成された"""
    transaction_ref: str
    order_id: str
    user_id: str
    amount: Decimal
    timestamp: datetime


class PaymentSettled(BaseModel):
    """決済が終端状態になった（1 決済につき 1 回だけ）"""
    transaction_ref: str
    order_id: str
    status: str
    timestamp: datetime


class PaymentSagaCompleted(BaseModel):
    """在庫ファンアウトと注文ステータス更新が全て完了した"""
    transaction_ref: str
    order_id: str
    steps: int
    timestamp: datetime


class PaymentSagaStalled(BaseModel):
    """ファンアウトが途中で止まった（resume_saga で再開するか手動照合が必要）"""
    transaction_ref: str
    order_id: str
    step: int
    action: str
    error: str
    timestamp: datetime
