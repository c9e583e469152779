from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Callable, Mapping, TypeVar

import stripe

from ..config import Settings
from ..domain.errors import GatewayError, GatewayTimeoutError, InvalidSignatureError
from ..domain.gateway import GatewayEventData, IntentResult, PaymentGateway, RefundResult
from ..domain.services import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stripe's accepted refund reasons; anything else travels in metadata only.
_STRIPE_REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})


class StripeGateway(PaymentGateway):
    """
    Payment gateway backed by Stripe PaymentIntents and Refunds.

    Amounts cross this boundary in major units (Decimal) and are converted to
    minor units only for the Stripe call. Every call is bounded by
    ``timeout_seconds``; a call that times out is not cancelled on Stripe's
    side, the caller treats its outcome as unknown.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        webhook_secret: str | None,
        timeout_seconds: float,
        return_url: str,
    ) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        self.return_url = return_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            timeout_seconds=settings.gateway_timeout_seconds,
            return_url=settings.payment_return_url,
        )

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise GatewayError("Stripe secret key not configured (STRIPE_SECRET_KEY)")
        return self.api_key

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("stripe %s timed out after %ss", operation, self.timeout_seconds)
            raise GatewayTimeoutError(f"payment gateway timed out during {operation}") from exc
        except stripe.StripeError as exc:
            logger.warning("stripe %s failed: %s", operation, exc.user_message or str(exc))
            raise GatewayError(exc.user_message or f"payment gateway rejected {operation}") from exc

    async def create_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        method: str | None,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> IntentResult:
        api_key = self._require_api_key()
        params: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": dict(metadata),
        }
        if method:
            params.update(payment_method=method, confirm=True, return_url=self.return_url)

        intent = await self._call(
            "create_intent",
            lambda: stripe.PaymentIntent.create(api_key=api_key, idempotency_key=idempotency_key, **params),
        )
        return IntentResult(
            intent_id=intent["id"],
            status=intent["status"],
            client_secret=intent.get("client_secret"),
        )

    async def create_refund(
        self,
        *,
        intent_id: str,
        amount: Decimal,
        reason: str | None,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        api_key = self._require_api_key()
        params: dict[str, Any] = {
            "payment_intent": intent_id,
            "amount": to_minor_units(amount),
        }
        if reason in _STRIPE_REFUND_REASONS:
            params["reason"] = reason
        elif reason:
            params["metadata"] = {"reason": reason}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        refund = await self._call(
            "create_refund",
            lambda: stripe.Refund.create(api_key=api_key, **params),
        )
        return RefundResult(
            refund_id=refund["id"],
            status=refund["status"],
            amount=from_minor_units(int(refund["amount"])),
        )

    def parse_event(self, payload: bytes, signature: str | None) -> GatewayEventData:
        if not self.webhook_secret:
            raise GatewayError("Webhook secret not configured (STRIPE_WEBHOOK_SECRET)")
        if not signature:
            raise InvalidSignatureError("missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("invalid webhook signature: %s", exc)
            raise InvalidSignatureError("invalid webhook signature") from exc
        except ValueError as exc:
            raise InvalidSignatureError("invalid webhook payload") from exc
        return event_from_payload(event)


def event_from_payload(event: Mapping[str, Any]) -> GatewayEventData:
    """Reduce a Stripe event to the fields reconciliation uses."""
    event_type = str(event.get("type", ""))
    obj: Mapping[str, Any] = event.get("data", {}).get("object", {}) or {}
    if event_type.startswith("charge."):
        intent_id = obj.get("payment_intent")
    else:
        intent_id = obj.get("id")
    metadata = obj.get("metadata") or {}
    return GatewayEventData(
        event_id=str(event.get("id", "")),
        kind=event_type,
        intent_id=str(intent_id) if intent_id else None,
        metadata={str(k): str(v) for k, v in dict(metadata).items()},
        payload=dict(obj),
    )
