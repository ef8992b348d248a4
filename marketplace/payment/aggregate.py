"""
Payment Service — 決済レコード
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .status import PaymentStatus


@dataclass
class Payment:
    transaction_ref: str
    order_id: str
    user_id: str
    amount: Decimal
    status: PaymentStatus
    gateway_response: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "Payment":
        return cls(
            transaction_ref=row.transaction_ref,
            order_id=row.order_id,
            user_id=row.user_id,
            amount=Decimal(str(row.amount)),
            status=PaymentStatus(row.status),
            gateway_response=row.gateway_response,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> dict:
        return {
            "transaction_ref": self.transaction_ref,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "amount": str(self.amount),
            "status": self.status.value,
            "gateway_response": self.gateway_response,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
