import logging
from dataclasses import dataclass
from datetime import date, time
from typing import Optional

from ..domain.caller import Caller
from ..domain.errors import ForbiddenError, NotFoundError, SelfOverlapError
from ..domain.repositories import BookingRepository, CatalogRepository, PaymentRepository, SlotRepository
from ..domain.services import compute_total_price, validate_offering
from ..domain.state_machine import Actor, ensure_mutable, ensure_transition, releases_slot
from ..models import LIVE_PAYMENT_STATUSES, Booking, BookingStatus, UserRole
from ..utils.time import utc_now_naive
from .slots import hold_slot, release_slot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChange:
    booking: Booking
    status_from: BookingStatus


@dataclass(frozen=True)
class Reschedule:
    booking: Booking
    previous_slot_id: Optional[int]


async def create_booking(
    catalog_repo: CatalogRepository,
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    caller: Caller,
    offering_id: int,
    booking_date: date,
    start_time: time,
    end_time: time,
    note: Optional[str] = None,
) -> Booking:
    if caller.role != UserRole.BUYER:
        raise ForbiddenError("only buyers can create bookings")

    offering = validate_offering(await catalog_repo.get_offering(offering_id))

    if await booking_repo.buyer_has_overlap(caller.user_id, booking_date, start_time, end_time):
        raise SelfOverlapError("you already have a booking for this time slot")

    slot = await hold_slot(
        slot_repo,
        booking_repo,
        offering_id=offering.offering_id,
        slot_date=booking_date,
        start=start_time,
        end=end_time,
    )

    return await booking_repo.create(
        buyer_id=caller.user_id,
        provider_id=offering.provider_id,
        offering_id=offering.offering_id,
        slot_id=slot.id,
        booking_date=booking_date,
        start_time=start_time,
        end_time=end_time,
        price_multiplier=slot.price_multiplier,
        total_price=compute_total_price(offering.base_price, slot.price_multiplier),
        note=note,
    )


async def load_for_party(booking_repo: BookingRepository, *, booking_id: int, caller: Caller) -> Booking:
    """Lock a booking for mutation, checking the caller is one of its parties."""
    booking = await booking_repo.get_for_update(booking_id)
    if booking is None:
        raise NotFoundError("booking not found")
    if not caller.is_party(buyer_id=booking.buyer_id, provider_id=booking.provider_id):
        raise ForbiddenError("booking belongs to another party")
    return booking


async def transition_booking(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    booking: Booking,
    *,
    target: BookingStatus,
    actor: Actor,
) -> BookingStatus:
    """
    Apply one state machine edge and its side effects to a locked booking.
    Returns the status the booking had before.
    """
    previous = booking.status
    ensure_transition(previous, target, actor)
    booking.status = target
    booking.version += 1
    booking.updated_at = utc_now_naive()
    if releases_slot(target):
        await release_slot(slot_repo, booking.slot_id)
    await booking_repo.save(booking)
    logger.info("booking %s: %s -> %s by %s", booking.id, previous, target, actor)
    return previous


async def cancel_booking(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    caller: Caller,
    booking_id: int,
) -> StatusChange:
    booking = await load_for_party(booking_repo, booking_id=booking_id, caller=caller)
    ensure_mutable(booking.status)
    previous = await transition_booking(
        slot_repo,
        booking_repo,
        booking,
        target=BookingStatus.CANCELLED,
        actor=Actor.from_role(caller.role),
    )
    return StatusChange(booking=booking, status_from=previous)


async def update_booking_status(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    caller: Caller,
    booking_id: int,
    target: BookingStatus,
) -> StatusChange:
    """Provider/administrator driven transitions: reject, cancel, complete."""
    if caller.role not in (UserRole.PROVIDER, UserRole.ADMIN):
        raise ForbiddenError("only providers and administrators may change booking status")
    booking = await load_for_party(booking_repo, booking_id=booking_id, caller=caller)
    previous = await transition_booking(
        slot_repo,
        booking_repo,
        booking,
        target=target,
        actor=Actor.from_role(caller.role),
    )
    return StatusChange(booking=booking, status_from=previous)


async def reschedule_booking(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    payment_repo: PaymentRepository,
    catalog_repo: CatalogRepository,
    *,
    caller: Caller,
    booking_id: int,
    booking_date: date,
    start_time: time,
    end_time: time,
    note: Optional[str] = None,
) -> Reschedule:
    """
    Move a pending/confirmed booking to a new window.

    The new window is claimed before the old slot is released, all inside the
    caller's transaction, so a failed claim leaves the old slot held.
    """
    booking = await load_for_party(booking_repo, booking_id=booking_id, caller=caller)
    ensure_mutable(booking.status)

    previous_slot_id = booking.slot_id
    same_window = (
        booking.booking_date == booking_date
        and booking.start_time == start_time
        and booking.end_time == end_time
    )
    if not same_window:
        if await booking_repo.buyer_has_overlap(
            booking.buyer_id, booking_date, start_time, end_time, exclude_booking_id=booking.id
        ):
            raise SelfOverlapError("buyer already has a booking for this time slot")

        slot = await hold_slot(
            slot_repo,
            booking_repo,
            offering_id=booking.offering_id,
            slot_date=booking_date,
            start=start_time,
            end=end_time,
            exclude_booking_id=booking.id,
            held_slot_id=booking.slot_id,
        )
        if slot.id != previous_slot_id:
            await release_slot(slot_repo, previous_slot_id)

        # An open or captured payment fixes the price.
        payments = await payment_repo.list_for_booking(booking.id)
        price_locked = any(p.status in LIVE_PAYMENT_STATUSES for p in payments)
        if not price_locked:
            offering = await catalog_repo.get_offering(booking.offering_id)
            if offering is not None:
                booking.price_multiplier = slot.price_multiplier
                booking.total_price = compute_total_price(offering.base_price, slot.price_multiplier)

        booking.slot_id = slot.id
        booking.booking_date = booking_date
        booking.start_time = start_time
        booking.end_time = end_time

    if note is not None:
        booking.note = note
    booking.version += 1
    booking.updated_at = utc_now_naive()
    await booking_repo.save(booking)
    return Reschedule(booking=booking, previous_slot_id=previous_slot_id)
