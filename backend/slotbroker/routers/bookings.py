from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_caller, get_session
from ..domain.caller import Caller
from ..domain.errors import DomainError
from ..infrastructure.repositories import (
    SqlAlchemyBookingRepository,
    SqlAlchemyCatalogRepository,
    SqlAlchemyPaymentRepository,
    SqlAlchemySlotRepository,
)
from ..models import BookingStatus
from ..schemas import BookingCreate, BookingRead, BookingStatsRead, BookingStatusUpdate, BookingUpdate
from ..usecases import bookings as booking_usecase
from ..usecases import reports as report_usecase
from ..utils.audit_log import emit_audit_log, initiator_for
from .errors import to_http_exception

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> BookingRead:
    catalog_repo = SqlAlchemyCatalogRepository(session)
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with session.begin():
            booking = await booking_usecase.create_booking(
                catalog_repo,
                slot_repo,
                booking_repo,
                caller=caller,
                offering_id=payload.offering_id,
                booking_date=payload.booking_date,
                start_time=payload.start_time,
                end_time=payload.end_time,
                note=payload.note,
            )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    emit_audit_log(
        action="booking.created",
        initiator="buyer",
        user_id=caller.user_id,
        booking_id=booking.id,
        slot_id=booking.slot_id,
        offering_id=booking.offering_id,
        status_to=booking.status,
        version=booking.version,
    )
    return BookingRead.from_db(booking=booking)


@router.get("", response_model=List[BookingRead])
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> list[BookingRead]:
    booking_repo = SqlAlchemyBookingRepository(session)
    bookings = await report_usecase.list_bookings(booking_repo, caller=caller, status=status_filter)
    return [BookingRead.from_db(booking=b) for b in bookings]


@router.get("/stats/overview", response_model=BookingStatsRead)
async def booking_stats(
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> BookingStatsRead:
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        stats = await report_usecase.booking_stats(booking_repo, caller=caller)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return BookingStatsRead.from_stats(stats)


@router.get("/{booking_id}", response_model=BookingRead)
async def get_booking(
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> BookingRead:
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        booking = await report_usecase.get_booking(booking_repo, caller=caller, booking_id=booking_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return BookingRead.from_db(booking=booking)


@router.put("/{booking_id}", response_model=BookingRead)
async def reschedule_booking(
    payload: BookingUpdate,
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> BookingRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    payment_repo = SqlAlchemyPaymentRepository(session)
    catalog_repo = SqlAlchemyCatalogRepository(session)
    try:
        async with session.begin():
            result = await booking_usecase.reschedule_booking(
                slot_repo,
                booking_repo,
                payment_repo,
                catalog_repo,
                caller=caller,
                booking_id=booking_id,
                booking_date=payload.booking_date,
                start_time=payload.start_time,
                end_time=payload.end_time,
                note=payload.note,
            )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    booking = result.booking
    emit_audit_log(
        action="booking.rescheduled",
        initiator=initiator_for(caller.role),
        user_id=caller.user_id,
        booking_id=booking.id,
        slot_id=booking.slot_id,
        offering_id=booking.offering_id,
        version=booking.version,
        extra={"previous_slot_id": result.previous_slot_id},
    )
    return BookingRead.from_db(booking=booking)


@router.post("/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> BookingRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with session.begin():
            change = await booking_usecase.cancel_booking(
                slot_repo,
                booking_repo,
                caller=caller,
                booking_id=booking_id,
            )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    booking = change.booking
    emit_audit_log(
        action="booking.cancelled",
        initiator=initiator_for(caller.role),
        user_id=caller.user_id,
        booking_id=booking.id,
        slot_id=booking.slot_id,
        offering_id=booking.offering_id,
        status_from=change.status_from,
        status_to=booking.status,
        version=booking.version,
    )
    return BookingRead.from_db(booking=booking)


@router.patch("/{booking_id}/status", response_model=BookingRead)
async def update_booking_status(
    payload: BookingStatusUpdate,
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> BookingRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with session.begin():
            change = await booking_usecase.update_booking_status(
                slot_repo,
                booking_repo,
                caller=caller,
                booking_id=booking_id,
                target=payload.status,
            )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    booking = change.booking
    emit_audit_log(
        action="booking.status_changed",
        initiator=initiator_for(caller.role),
        user_id=caller.user_id,
        booking_id=booking.id,
        slot_id=booking.slot_id,
        offering_id=booking.offering_id,
        status_from=change.status_from,
        status_to=booking.status,
        version=booking.version,
    )
    return BookingRead.from_db(booking=booking)
