"""
Logistics Service — 配送ステータスの状態遷移

状態遷移:
    PENDING ⇄ SHIPPED
    PENDING / SHIPPED → DELIVERED | CANCELLED | FAILED

DELIVERED / CANCELLED / FAILED は終端。終端からは同じ状態への再設定だけを許可し、
それ以外は Blocked を返す。メッセージは阻んだ状態ごとに異なる。

next_status は全ての (現在, 目標) の組み合わせで Accepted か Blocked を返し、
例外で業務ルールを表現しない。
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED, DeliveryStatus.FAILED)


@dataclass(frozen=True)
class Accepted:
    status: DeliveryStatus


@dataclass(frozen=True)
class Blocked:
    source: DeliveryStatus
    target: DeliveryStatus
    message: str


_BLOCKED_MESSAGES = {
    DeliveryStatus.DELIVERED: "Delivery {tn} has already been delivered; cannot change status to {target}",
    DeliveryStatus.CANCELLED: "Delivery {tn} has been cancelled; cannot change status to {target}",
    DeliveryStatus.FAILED: "Delivery {tn} has failed; cannot change status to {target}",
}


def _blocked(tracking_number: str, source: DeliveryStatus, target: DeliveryStatus) -> Blocked:
    message = _BLOCKED_MESSAGES[source].format(tn=tracking_number, target=target.value)
    return Blocked(source, target, message)


def next_status(
    tracking_number: str,
    current: DeliveryStatus,
    target: DeliveryStatus,
) -> Accepted | Blocked:
    if current.is_terminal and target is not current:
        return _blocked(tracking_number, current, target)
    return Accepted(target)


def cancellation(tracking_number: str, current: DeliveryStatus) -> Accepted | Blocked:
    """キャンセルは終端状態からは（CANCELLED → CANCELLED も含めて）許可しない。"""
    if current.is_terminal:
        return _blocked(tracking_number, current, DeliveryStatus.CANCELLED)
    return Accepted(DeliveryStatus.CANCELLED)


# ── 配達日時 ───────────────────────────────────


@dataclass(frozen=True)
class NotDelivered:
    pass


@dataclass(frozen=True)
class DeliveredAt:
    timestamp: datetime


DeliveryProgress = NotDelivered | DeliveredAt


def progress_after(
    progress: DeliveryProgress,
    status: DeliveryStatus,
    now: datetime,
) -> DeliveryProgress:
    """初めて DELIVERED になったときだけ配達日時を記録する。"""
    if status is DeliveryStatus.DELIVERED and isinstance(progress, NotDelivered):
        return DeliveredAt(now)
    return progress
