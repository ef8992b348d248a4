"""
Logistics Service — 配送集約

DB の行から復元し、状態遷移・現在地・メモを適用する。
メモは追記のみ（改行区切り）で、上書きはしない。
"""

from dataclasses import dataclass
from datetime import datetime

from ..shared.errors import InvalidStateTransitionError
from .status import (
    Blocked,
    DeliveredAt,
    DeliveryProgress,
    DeliveryStatus,
    NotDelivered,
    cancellation,
    next_status,
    progress_after,
)


@dataclass
class Delivery:
    tracking_number: str
    order_id: str
    status: DeliveryStatus
    current_location: str | None
    notes: str | None
    recipient_name: str | None
    recipient_address: str | None
    delivery_agent: str | None
    estimated_delivery_date: datetime | None
    progress: DeliveryProgress
    created_at: datetime
    updated_at: datetime

    @property
    def actual_delivery_date(self) -> datetime | None:
        return self.progress.timestamp if isinstance(self.progress, DeliveredAt) else None

    @classmethod
    def from_row(cls, row) -> "Delivery":
        return cls(
            tracking_number=row.tracking_number,
            order_id=row.order_id,
            status=DeliveryStatus(row.status),
            current_location=row.current_location,
            notes=row.notes,
            recipient_name=row.recipient_name,
            recipient_address=row.recipient_address,
            delivery_agent=row.delivery_agent,
            estimated_delivery_date=row.estimated_delivery_date,
            progress=(
                DeliveredAt(row.actual_delivery_date)
                if row.actual_delivery_date is not None
                else NotDelivered()
            ),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # ── 状態変更 ─────────────────────────────────

    def apply_status(self, target: DeliveryStatus, now: datetime) -> None:
        result = next_status(self.tracking_number, self.status, target)
        if isinstance(result, Blocked):
            raise InvalidStateTransitionError(
                result.source.value, result.target.value, result.message
            )
        self.status = result.status
        self.progress = progress_after(self.progress, self.status, now)
        self.updated_at = now

    def apply_cancellation(self, reason: str, now: datetime) -> None:
        result = cancellation(self.tracking_number, self.status)
        if isinstance(result, Blocked):
            raise InvalidStateTransitionError(
                result.source.value, result.target.value, result.message
            )
        self.status = result.status
        self.append_note(f"Cancelled: {reason}")
        self.updated_at = now

    def move_to(self, location: str | None) -> None:
        if location:
            self.current_location = location

    def append_note(self, note: str | None) -> None:
        if not note:
            return
        self.notes = f"{self.notes}\n{note}" if self.notes else note

    def to_dict(self) -> dict:
        return {
            "tracking_number": self.tracking_number,
            "order_id": self.order_id,
            "status": self.status.value,
            "current_location": self.current_location,
            "notes": self.notes,
            "recipient_name": self.recipient_name,
            "recipient_address": self.recipient_address,
            "delivery_agent": self.delivery_agent,
            "estimated_delivery_date": (
                self.estimated_delivery_date.isoformat()
                if self.estimated_delivery_date
                else None
            ),
            "actual_delivery_date": (
                self.actual_delivery_date.isoformat() if self.actual_delivery_date else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
