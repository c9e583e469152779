import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Optional

from ..domain.caller import Caller
from ..domain.errors import (
    DuplicatePaymentError,
    ForbiddenError,
    GatewayTimeoutError,
    IllegalTransitionError,
    InvalidRequestError,
    NotFoundError,
)
from ..domain.gateway import EventKind, GatewayEventData, IntentResult, PaymentGateway
from ..domain.repositories import BookingRepository, GatewayEventRepository, PaymentRepository, SlotRepository
from ..domain.services import from_minor_units, quantize_money
from ..domain.state_machine import Actor, can_transition_payment
from ..models import (
    ACTIVE_BOOKING_STATUSES,
    LIVE_PAYMENT_STATUSES,
    Booking,
    BookingStatus,
    Payment,
    PaymentStatus,
    UserRole,
)
from ..utils.time import utc_now_naive
from .bookings import transition_booking

logger = logging.getLogger(__name__)

_CLOSED_BOOKING_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.REJECTED})


class EventOutcome(StrEnum):
    APPLIED = "applied"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class InitiatedPayment:
    payment: Payment
    booking: Booking
    client_secret: Optional[str]
    timed_out: bool = False


@dataclass(frozen=True)
class ReconcileResult:
    outcome: EventOutcome
    payment_id: Optional[int] = None
    booking_id: Optional[int] = None
    payment_status: Optional[PaymentStatus] = None
    booking_status: Optional[BookingStatus] = None


def _idempotency_key(booking_id: int, attempt: int) -> str:
    return f"booking-{booking_id}-attempt-{attempt}"


def _refund_idempotency_key(payment_id: int) -> str:
    return f"payment-{payment_id}-refund"


def _set_payment_status(payment: Payment, target: PaymentStatus) -> None:
    payment.status = target
    payment.updated_at = utc_now_naive()


async def _locked_booking(booking_repo: BookingRepository, booking_id: int) -> Optional[Booking]:
    booking = await booking_repo.get_for_update(booking_id)
    if booking is None:
        logger.warning("payment references missing booking %s", booking_id)
    return booking


async def apply_success(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    payment_repo: PaymentRepository,
    payment: Payment,
) -> bool:
    """
    Mark a payment completed and confirm its booking.
    Returns False when the payment was not pending (late or repeated success).
    """
    if not can_transition_payment(payment.status, PaymentStatus.COMPLETED):
        logger.info("payment %s is %s; success ignored", payment.id, payment.status)
        return False

    _set_payment_status(payment, PaymentStatus.COMPLETED)
    await payment_repo.save(payment)

    booking = await _locked_booking(booking_repo, payment.booking_id)
    if booking is None:
        return True
    if booking.status == BookingStatus.PENDING:
        await transition_booking(
            slot_repo, booking_repo, booking, target=BookingStatus.CONFIRMED, actor=Actor.PAYMENT
        )
    return True


async def apply_failure(payment_repo: PaymentRepository, payment: Payment) -> bool:
    """Payment pending -> failed. The booking stays pending so the buyer can retry."""
    if not can_transition_payment(payment.status, PaymentStatus.FAILED):
        logger.info("payment %s is %s; failure ignored", payment.id, payment.status)
        return False
    _set_payment_status(payment, PaymentStatus.FAILED)
    await payment_repo.save(payment)
    return True


async def apply_refund(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    payment_repo: PaymentRepository,
    payment: Payment,
    *,
    refund_id: Optional[str] = None,
    amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
) -> bool:
    """
    Shared refund routine for the gateway notification and the synchronous refund.

    Marks the payment refunded, cancels an active booking and releases its slot.
    A second application is a no-op and returns False.
    """
    if payment.status == PaymentStatus.REFUNDED:
        return False
    if not can_transition_payment(payment.status, PaymentStatus.REFUNDED):
        logger.warning("payment %s is %s; refund not applied", payment.id, payment.status)
        return False

    payment.refunded_amount = quantize_money(amount) if amount is not None else payment.amount
    if refund_id is not None:
        payment.gateway_refund_id = refund_id
    if reason is not None:
        payment.refund_reason = reason
    _set_payment_status(payment, PaymentStatus.REFUNDED)
    await payment_repo.save(payment)

    booking = await _locked_booking(booking_repo, payment.booking_id)
    if booking is None:
        return True
    if booking.status in ACTIVE_BOOKING_STATUSES:
        await transition_booking(
            slot_repo, booking_repo, booking, target=BookingStatus.CANCELLED, actor=Actor.PAYMENT
        )
    else:
        logger.info("booking %s is %s; refund leaves it unchanged", booking.id, booking.status)
    return True


async def refund_stranded_capture(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    payment_repo: PaymentRepository,
    gateway: PaymentGateway,
    payment: Payment,
) -> bool:
    """
    Give the money back when a capture lands on a cancelled or rejected booking.

    The booking was closed while its intent was still open, so nothing is
    left to confirm. Returns False when the booking is still open.
    """
    booking = await booking_repo.get(payment.booking_id)
    if booking is None or booking.status not in _CLOSED_BOOKING_STATUSES:
        return False
    if payment.status != PaymentStatus.COMPLETED or payment.gateway_intent_id is None:
        return False

    reason = f"booking {booking.status}"
    logger.warning("payment %s captured for %s booking %s; refunding", payment.id, booking.status, booking.id)
    result = await gateway.create_refund(
        intent_id=payment.gateway_intent_id,
        amount=payment.amount,
        reason=reason,
        idempotency_key=_refund_idempotency_key(payment.id),
    )
    return await apply_refund(
        slot_repo,
        booking_repo,
        payment_repo,
        payment,
        refund_id=result.refund_id,
        amount=payment.amount,
        reason=reason,
    )


async def initiate_payment(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    payment_repo: PaymentRepository,
    gateway: PaymentGateway,
    *,
    caller: Caller,
    booking_id: int,
    method: Optional[str],
    currency: str,
) -> InitiatedPayment:
    """
    Create (and, with a method, confirm) a gateway intent for a booking's price.

    A pending payment left without an intent id by an earlier timeout is
    resumed with its original idempotency key instead of counting as a
    duplicate.
    """
    booking = await booking_repo.get_for_update(booking_id)
    if booking is None:
        raise NotFoundError("booking not found")
    if caller.role != UserRole.BUYER or caller.user_id != booking.buyer_id:
        raise ForbiddenError("only the booking's buyer may pay for it")
    if booking.status not in ACTIVE_BOOKING_STATUSES:
        raise IllegalTransitionError(f"booking is {booking.status}")

    payments = await payment_repo.list_for_booking(booking.id)
    live = [p for p in payments if p.status in LIVE_PAYMENT_STATUSES]
    resumable: Optional[Payment] = None
    if live:
        candidate = live[-1]
        if candidate.status == PaymentStatus.PENDING and candidate.gateway_intent_id is None:
            resumable = candidate
        else:
            raise DuplicatePaymentError("payment already exists for this booking")

    if resumable is not None:
        attempt = payments.index(resumable) + 1
        amount = resumable.amount
    else:
        attempt = len(payments) + 1
        amount = booking.total_price

    metadata = {
        "booking_id": str(booking.id),
        "buyer_id": str(booking.buyer_id),
        "provider_id": str(booking.provider_id),
    }
    intent: IntentResult
    try:
        intent = await gateway.create_intent(
            amount=amount,
            currency=currency,
            method=method,
            metadata=metadata,
            idempotency_key=_idempotency_key(booking.id, attempt),
        )
    except GatewayTimeoutError:
        if resumable is not None:
            return InitiatedPayment(payment=resumable, booking=booking, client_secret=None, timed_out=True)
        payment = await payment_repo.create(
            booking_id=booking.id,
            buyer_id=booking.buyer_id,
            provider_id=booking.provider_id,
            amount=amount,
            currency=currency,
            method=method,
            gateway_intent_id=None,
        )
        logger.warning(
            "gateway timed out creating intent for booking %s; payment %s left pending",
            booking.id,
            payment.id,
        )
        return InitiatedPayment(payment=payment, booking=booking, client_secret=None, timed_out=True)

    if resumable is not None:
        payment = resumable
        payment.gateway_intent_id = intent.intent_id
        payment.updated_at = utc_now_naive()
        await payment_repo.save(payment)
    else:
        payment = await payment_repo.create(
            booking_id=booking.id,
            buyer_id=booking.buyer_id,
            provider_id=booking.provider_id,
            amount=amount,
            currency=currency,
            method=method,
            gateway_intent_id=intent.intent_id,
        )

    if intent.succeeded:
        await apply_success(slot_repo, booking_repo, payment_repo, payment)

    return InitiatedPayment(payment=payment, booking=booking, client_secret=intent.client_secret)


async def _locate_payment(payment_repo: PaymentRepository, event: GatewayEventData) -> Optional[Payment]:
    if event.intent_id:
        payment = await payment_repo.get_by_intent_for_update(event.intent_id)
        if payment is not None:
            return payment

    raw_booking_id = event.metadata.get("booking_id")
    if not raw_booking_id or not raw_booking_id.isdigit():
        return None
    payment = await payment_repo.get_unlinked_pending_for_update(int(raw_booking_id))
    if payment is not None and event.intent_id:
        payment.gateway_intent_id = event.intent_id
        payment.updated_at = utc_now_naive()
        await payment_repo.save(payment)
        logger.info("attached intent %s to payment %s", event.intent_id, payment.id)
    return payment


async def _record(
    event_repo: GatewayEventRepository, event: GatewayEventData, outcome: EventOutcome
) -> EventOutcome:
    """Store the event id; a concurrent delivery that stored it first turns this one into a duplicate."""
    recorded = await event_repo.record(
        event_id=event.event_id, event_type=event.kind, intent_id=event.intent_id, outcome=outcome
    )
    if not recorded:
        logger.info("gateway event %s recorded by a concurrent delivery", event.event_id)
        return EventOutcome.DUPLICATE
    return outcome


async def handle_gateway_event(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    payment_repo: PaymentRepository,
    event_repo: GatewayEventRepository,
    gateway: PaymentGateway,
    event: GatewayEventData,
) -> ReconcileResult:
    """
    Apply one verified gateway notification.

    Redelivered event ids are reported as duplicates without side effects.
    An event naming a booking whose payment is not visible yet raises
    NotFoundError so the gateway delivers it again later. A success for a
    booking that was closed in the meantime is refunded through the gateway.
    """
    if await event_repo.exists(event.event_id):
        logger.info("gateway event %s already processed", event.event_id)
        return ReconcileResult(outcome=EventOutcome.DUPLICATE)

    try:
        kind: Optional[EventKind] = EventKind(event.kind)
    except ValueError:
        kind = None

    if kind is None:
        logger.debug("ignoring gateway event %s of kind %s", event.event_id, event.kind)
        return ReconcileResult(outcome=await _record(event_repo, event, EventOutcome.IGNORED))

    payment = await _locate_payment(payment_repo, event)
    if payment is None:
        if event.metadata.get("booking_id"):
            raise NotFoundError(
                f"no payment yet for booking {event.metadata['booking_id']} (intent {event.intent_id})"
            )
        logger.warning("gateway event %s references unknown intent %s", event.event_id, event.intent_id)
        return ReconcileResult(outcome=await _record(event_repo, event, EventOutcome.IGNORED))

    if kind == EventKind.INTENT_SUCCEEDED:
        changed = await apply_success(slot_repo, booking_repo, payment_repo, payment)
        if changed:
            await refund_stranded_capture(slot_repo, booking_repo, payment_repo, gateway, payment)
    elif kind in (EventKind.INTENT_FAILED, EventKind.INTENT_CANCELED):
        changed = await apply_failure(payment_repo, payment)
    else:
        refunds = (event.payload.get("refunds") or {}).get("data") or []
        refund_id = refunds[0].get("id") if refunds else None
        amount_refunded = event.payload.get("amount_refunded")
        changed = await apply_refund(
            slot_repo,
            booking_repo,
            payment_repo,
            payment,
            refund_id=refund_id,
            amount=from_minor_units(int(amount_refunded)) if amount_refunded is not None else None,
        )

    outcome = await _record(event_repo, event, EventOutcome.APPLIED if changed else EventOutcome.IGNORED)

    booking = await booking_repo.get(payment.booking_id)
    return ReconcileResult(
        outcome=outcome,
        payment_id=payment.id,
        booking_id=payment.booking_id,
        payment_status=payment.status,
        booking_status=booking.status if booking is not None else None,
    )


async def process_refund(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    payment_repo: PaymentRepository,
    gateway: PaymentGateway,
    *,
    caller: Caller,
    payment_id: int,
    amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
) -> Payment:
    payment = await payment_repo.get_for_update(payment_id)
    if payment is None:
        raise NotFoundError("payment not found")
    if not caller.is_admin and not (
        caller.role == UserRole.PROVIDER and caller.user_id == payment.provider_id
    ):
        raise ForbiddenError("only the provider or an administrator may refund")
    if payment.status != PaymentStatus.COMPLETED:
        raise IllegalTransitionError("only completed payments can be refunded")
    if payment.gateway_intent_id is None:
        raise IllegalTransitionError("payment has no gateway intent to refund")

    refund_amount = quantize_money(amount) if amount is not None else payment.amount
    if refund_amount <= 0 or refund_amount > payment.amount:
        raise InvalidRequestError("refund amount must be positive and at most the payment amount")

    result = await gateway.create_refund(intent_id=payment.gateway_intent_id, amount=refund_amount, reason=reason)
    await apply_refund(
        slot_repo,
        booking_repo,
        payment_repo,
        payment,
        refund_id=result.refund_id,
        amount=refund_amount,
        reason=reason,
    )
    return payment
