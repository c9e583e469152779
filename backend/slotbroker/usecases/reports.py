from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from ..domain.caller import Caller
from ..domain.errors import ForbiddenError, NotFoundError
from ..domain.repositories import BookingRepository, PaymentRepository
from ..models import Booking, BookingStatus, Payment, PaymentStatus, UserRole

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class BookingStats:
    counts: dict[str, int] = field(default_factory=dict)
    total: int = 0
    completed_revenue: Decimal = ZERO


@dataclass(frozen=True)
class PaymentStats:
    counts: dict[str, int] = field(default_factory=dict)
    total: int = 0
    total_revenue: Decimal = ZERO
    total_refunds: Decimal = ZERO
    net_revenue: Decimal = ZERO


def _scope(caller: Caller) -> dict[str, Optional[int]]:
    if caller.role == UserRole.BUYER:
        return {"buyer_id": caller.user_id, "provider_id": None}
    if caller.role == UserRole.PROVIDER:
        return {"buyer_id": None, "provider_id": caller.user_id}
    return {"buyer_id": None, "provider_id": None}


def _stats_scope(caller: Caller) -> Optional[int]:
    if caller.role == UserRole.BUYER:
        raise ForbiddenError("statistics are available to providers and administrators")
    return caller.user_id if caller.role == UserRole.PROVIDER else None


async def list_bookings(
    booking_repo: BookingRepository,
    *,
    caller: Caller,
    status: Optional[BookingStatus] = None,
) -> list[Booking]:
    return await booking_repo.list_for(status=status, **_scope(caller))


async def get_booking(booking_repo: BookingRepository, *, caller: Caller, booking_id: int) -> Booking:
    booking = await booking_repo.get(booking_id)
    if booking is None:
        raise NotFoundError("booking not found")
    if not caller.is_party(buyer_id=booking.buyer_id, provider_id=booking.provider_id):
        raise ForbiddenError("booking belongs to another party")
    return booking


async def list_payments(
    payment_repo: PaymentRepository,
    *,
    caller: Caller,
    status: Optional[PaymentStatus] = None,
) -> list[Payment]:
    return await payment_repo.list_for(status=status, **_scope(caller))


async def get_payment(payment_repo: PaymentRepository, *, caller: Caller, payment_id: int) -> Payment:
    payment = await payment_repo.get(payment_id)
    if payment is None:
        raise NotFoundError("payment not found")
    if not caller.is_party(buyer_id=payment.buyer_id, provider_id=payment.provider_id):
        raise ForbiddenError("payment belongs to another party")
    return payment


async def booking_stats(booking_repo: BookingRepository, *, caller: Caller) -> BookingStats:
    rows = await booking_repo.status_summary(_stats_scope(caller))
    counts = {status.value: 0 for status in BookingStatus}
    revenue = ZERO
    for status, count, total_price in rows:
        counts[status.value] = count
        if status == BookingStatus.COMPLETED:
            revenue += total_price
    return BookingStats(counts=counts, total=sum(counts.values()), completed_revenue=revenue)


async def payment_stats(payment_repo: PaymentRepository, *, caller: Caller) -> PaymentStats:
    """Revenue counts completed payments; refunds count the refunded amount of refunded ones."""
    rows = await payment_repo.status_summary(_stats_scope(caller))
    counts = {status.value: 0 for status in PaymentStatus}
    revenue = ZERO
    refunds = ZERO
    for status, count, amount, refunded in rows:
        counts[status.value] = count
        if status == PaymentStatus.COMPLETED:
            revenue += amount
        elif status == PaymentStatus.REFUNDED:
            refunds += refunded
    return PaymentStats(
        counts=counts,
        total=sum(counts.values()),
        total_revenue=revenue,
        total_refunds=refunds,
        net_revenue=revenue - refunds,
    )
