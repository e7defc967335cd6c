from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from ..models import ConflictType


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    amount: int


@dataclass(frozen=True)
class Notification:
    recipient: str
    template_id: str
    variables: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def verify_signature(self, payload: bytes, signature: str) -> bool: ...

    async def refund(
        self,
        *,
        payment_correlation_id: str,
        amount: int,
        reason_code: ConflictType,
        metadata: dict[str, str],
    ) -> RefundResult: ...


class Notifier(Protocol):
    async def send(self, notification: Notification) -> None: ...
