"""
Payment Service — 決済ステータスと状態遷移

状態遷移:
    PENDING → SUCCESS   (ゲートウェイが成功を通知)
    PENDING → FAILED    (ゲートウェイが失敗を通知)
    PENDING → REFUNDED  (返金として通知)

SUCCESS / FAILED / REFUNDED は終端。終端状態への再通知は
AlreadySettled として扱い、呼び出し側は何もせず保存済みの決済を返す。
"""

from dataclasses import dataclass
from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


@dataclass(frozen=True)
class Applied:
    status: PaymentStatus


@dataclass(frozen=True)
class AlreadySettled:
    status: PaymentStatus


@dataclass(frozen=True)
class Rejected:
    reason: str


Transition = Applied | AlreadySettled | Rejected


def resolve_transition(current: PaymentStatus, target: PaymentStatus) -> Transition:
    """現在の状態と通知された状態から遷移結果を決める（全ての組み合わせで値を返す）。"""
    if current.is_terminal:
        return AlreadySettled(current)
    if not target.is_terminal:
        return Rejected(f"Gateway callback must report a final status, got {target.value}")
    return Applied(target)
