from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import Any, Mapping, Protocol


class EventKind(StrEnum):
    INTENT_SUCCEEDED = "payment_intent.succeeded"
    INTENT_FAILED = "payment_intent.payment_failed"
    INTENT_CANCELED = "payment_intent.canceled"
    CHARGE_REFUNDED = "charge.refunded"


@dataclass(frozen=True)
class IntentResult:
    intent_id: str
    status: str
    client_secret: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    amount: Decimal


@dataclass(frozen=True)
class GatewayEventData:
    """A signature-verified gateway notification reduced to what reconciliation needs."""

    event_id: str
    kind: str
    intent_id: str | None
    metadata: Mapping[str, str] = field(default_factory=dict)
    payload: Mapping[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    async def create_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        method: str | None,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> IntentResult: ...

    async def create_refund(
        self,
        *,
        intent_id: str,
        amount: Decimal,
        reason: str | None,
        idempotency_key: str | None = None,
    ) -> RefundResult: ...

    def parse_event(self, payload: bytes, signature: str | None) -> GatewayEventData: ...
