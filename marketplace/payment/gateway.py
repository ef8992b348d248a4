"""
Payment Service — 決済ゲートウェイ

実際のゲートウェイ連携は範囲外。ここでは transaction_ref に対して
最終的に SUCCESS / FAILED / REFUNDED を返すコラボレータとしてモデル化する。
本番では非同期 Webhook になるため、呼び出し側は待ち時間に上限を設ける。
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from .status import PaymentStatus


@dataclass(frozen=True)
class GatewayOutcome:
    status: PaymentStatus
    response: str


class PaymentGateway(Protocol):
    async def authorize(self, transaction_ref: str, amount: Decimal) -> GatewayOutcome: ...


class SimulatedGateway:
    """常に同じ結果を返すスタンドイン。delay で応答の遅いゲートウェイも再現できる。"""

    def __init__(
        self,
        status: PaymentStatus = PaymentStatus.SUCCESS,
        delay: float = 0.0,
    ):
        self.status = status
        self.delay = delay

    async def authorize(self, transaction_ref: str, amount: Decimal) -> GatewayOutcome:
        if self.delay:
            await asyncio.sleep(self.delay)
        return GatewayOutcome(self.status, f"SIMULATED_{self.status.value}")
