from dataclasses import dataclass
from datetime import time
from decimal import ROUND_HALF_UP, Decimal

from .errors import NotFoundError, UnverifiedProviderError

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class OfferingSnapshot:
    offering_id: int
    provider_id: int
    is_active: bool
    provider_verified: bool
    base_price: Decimal


def validate_offering(snapshot: OfferingSnapshot | None) -> OfferingSnapshot:
    """
    Pure validation of the catalog preconditions, in order:
    the offering must exist and be active, then its provider must be verified.
    """
    if snapshot is None or not snapshot.is_active:
        raise NotFoundError("offering not found or inactive")
    if not snapshot.provider_verified:
        raise UnverifiedProviderError("cannot book with an unverified provider")
    return snapshot


def covers(slot_start: time, slot_end: time, start: time, end: time) -> bool:
    """A slot covers a requested window when it fully contains it."""
    return slot_start <= start and slot_end >= end


def quantize_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_total_price(base_price: Decimal, multiplier: Decimal | None) -> Decimal:
    factor = multiplier if multiplier is not None else Decimal("1")
    return quantize_money(Decimal(base_price) * Decimal(factor))


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return quantize_money(Decimal(amount) / 100)
