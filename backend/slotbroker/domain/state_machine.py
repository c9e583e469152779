from __future__ import annotations

from enum import StrEnum

from ..models import BookingStatus, PaymentStatus, UserRole
from .errors import ForbiddenError, IllegalTransitionError


class Actor(StrEnum):
    BUYER = "buyer"
    PROVIDER = "provider"
    ADMIN = "admin"
    PAYMENT = "payment"

    @classmethod
    def from_role(cls, role: UserRole) -> "Actor":
        return cls(role.value)


TERMINAL_BOOKING_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.REJECTED, BookingStatus.CANCELLED}
)

_BOOKING_TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], frozenset[Actor]] = {
    (BookingStatus.PENDING, BookingStatus.CONFIRMED): frozenset({Actor.PAYMENT}),
    (BookingStatus.PENDING, BookingStatus.REJECTED): frozenset({Actor.PROVIDER, Actor.ADMIN}),
    (BookingStatus.PENDING, BookingStatus.CANCELLED): frozenset(
        {Actor.BUYER, Actor.PROVIDER, Actor.ADMIN, Actor.PAYMENT}
    ),
    (BookingStatus.CONFIRMED, BookingStatus.CANCELLED): frozenset(
        {Actor.BUYER, Actor.PROVIDER, Actor.ADMIN, Actor.PAYMENT}
    ),
    (BookingStatus.CONFIRMED, BookingStatus.COMPLETED): frozenset({Actor.PROVIDER, Actor.ADMIN}),
}

_SLOT_RELEASING = frozenset({BookingStatus.REJECTED, BookingStatus.CANCELLED})

# pending -> refunded covers a refund notification that overtakes a delayed success.
_PAYMENT_TRANSITIONS: frozenset[tuple[PaymentStatus, PaymentStatus]] = frozenset(
    {
        (PaymentStatus.PENDING, PaymentStatus.COMPLETED),
        (PaymentStatus.PENDING, PaymentStatus.FAILED),
        (PaymentStatus.PENDING, PaymentStatus.REFUNDED),
        (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED),
    }
)


def ensure_transition(current: BookingStatus, target: BookingStatus, actor: Actor) -> None:
    """
    Validate a booking status change.
    Raises IllegalTransitionError when the table has no such edge and
    ForbiddenError when the edge exists but the actor may not trigger it.
    """
    allowed = _BOOKING_TRANSITIONS.get((current, target))
    if allowed is None:
        raise IllegalTransitionError(f"cannot move booking from {current} to {target}")
    if actor not in allowed:
        raise ForbiddenError(f"{actor} may not move booking from {current} to {target}")


def ensure_mutable(current: BookingStatus) -> None:
    """Only pending/confirmed bookings accept edits and cancellation."""
    if current in TERMINAL_BOOKING_STATUSES:
        raise IllegalTransitionError(f"booking is {current}")


def releases_slot(target: BookingStatus) -> bool:
    return target in _SLOT_RELEASING


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return (current, target) in _PAYMENT_TRANSITIONS
