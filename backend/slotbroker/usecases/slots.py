import logging
from datetime import date, time
from decimal import Decimal
from typing import Iterable, Optional

from ..domain.caller import Caller
from ..domain.errors import ForbiddenError, InvalidRequestError, NotFoundError, SlotUnavailableError
from ..domain.repositories import BookingRepository, CatalogRepository, SlotRepository
from ..domain.services import covers
from ..models import Slot, UserRole
from ..utils.time import window_seconds

logger = logging.getLogger(__name__)

CLAIM_ATTEMPTS = 2


def pick_covering(
    slots: Iterable[Slot],
    start: time,
    end: time,
    *,
    held_slot_id: Optional[int] = None,
) -> Optional[Slot]:
    """
    Choose the tightest slot that covers [start, end).
    ``held_slot_id`` names a slot the caller already holds; it counts as available.
    """
    candidates = [
        s
        for s in slots
        if (s.is_available or s.id == held_slot_id) and covers(s.start_time, s.end_time, start, end)
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda s: (window_seconds(s.start_time, s.end_time), s.id))


async def find_available(
    slot_repo: SlotRepository,
    *,
    offering_id: int,
    slot_date: date,
    start: time,
    end: time,
    held_slot_id: Optional[int] = None,
) -> Slot:
    """Row-lock the offering's slots overlapping [start, end) and return the tightest covering one."""
    slots = await slot_repo.lock_overlapping(offering_id, slot_date, start, end)
    slot = pick_covering(slots, start, end, held_slot_id=held_slot_id)
    if slot is None:
        raise NotFoundError("no available slot covers the requested window")
    return slot


async def hold_slot(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    offering_id: int,
    slot_date: date,
    start: time,
    end: time,
    exclude_booking_id: Optional[int] = None,
    held_slot_id: Optional[int] = None,
) -> Slot:
    """
    Lock, check and claim a covering slot for a booking window.

    Every slot of the offering overlapping the window is row-locked first, so
    requests for overlapping windows serialize here. The claim itself is a
    conditional update; losing it triggers one re-search before giving up.
    Returns the held slot (possibly ``held_slot_id`` itself, left untouched).
    """
    for attempt in range(1, CLAIM_ATTEMPTS + 1):
        try:
            slot = await find_available(
                slot_repo,
                offering_id=offering_id,
                slot_date=slot_date,
                start=start,
                end=end,
                held_slot_id=held_slot_id,
            )
        except NotFoundError as exc:
            raise SlotUnavailableError("requested time slot is not available") from exc
        if await booking_repo.offering_has_overlap(
            offering_id, slot_date, start, end, exclude_booking_id=exclude_booking_id
        ):
            raise SlotUnavailableError("requested window overlaps an existing booking")

        if slot.id == held_slot_id:
            return slot
        if await slot_repo.claim(slot.id):
            return slot
        logger.info("slot %s claimed concurrently (attempt %s/%s)", slot.id, attempt, CLAIM_ATTEMPTS)

    raise SlotUnavailableError("requested time slot is not available")


async def release_slot(slot_repo: SlotRepository, slot_id: Optional[int]) -> None:
    """Mark a slot available again. Already-available and missing slots are no-ops."""
    if slot_id is None:
        logger.warning("booking holds no slot reference; nothing to release")
        return
    if not await slot_repo.release(slot_id):
        logger.warning("slot %s no longer exists; release skipped", slot_id)


async def list_availability(
    slot_repo: SlotRepository,
    *,
    offering_id: int,
    slot_date: Optional[date],
    include_unavailable: bool = False,
) -> list[Slot]:
    return await slot_repo.list_for_offering(offering_id, slot_date, include_unavailable)


async def create_slot(
    slot_repo: SlotRepository,
    catalog_repo: CatalogRepository,
    *,
    caller: Caller,
    offering_id: int,
    slot_date: date,
    start_time: time,
    end_time: time,
    price_multiplier: Decimal,
) -> Slot:
    if start_time >= end_time:
        raise InvalidRequestError("start_time must be earlier than end_time")
    if price_multiplier <= 0:
        raise InvalidRequestError("price_multiplier must be positive")

    offering = await catalog_repo.get_offering(offering_id)
    if offering is None:
        raise NotFoundError("offering not found")
    if not caller.is_admin and not (
        caller.role == UserRole.PROVIDER and caller.user_id == offering.provider_id
    ):
        raise ForbiddenError("only the offering owner may add slots")

    return await slot_repo.create(
        offering_id=offering_id,
        slot_date=slot_date,
        start_time=start_time,
        end_time=end_time,
        price_multiplier=price_multiplier,
    )
