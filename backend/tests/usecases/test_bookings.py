import asyncio
from datetime import date, time
from decimal import Decimal

import pytest
from slotbroker.domain.caller import Caller
from slotbroker.domain.errors import (
    ForbiddenError,
    IllegalTransitionError,
    NotFoundError,
    SelfOverlapError,
    SlotUnavailableError,
    UnverifiedProviderError,
)
from slotbroker.domain.gateway import GatewayEventData
from slotbroker.models import BookingStatus, PaymentStatus, UserRole
from slotbroker.usecases import bookings as uc
from slotbroker.usecases import payments as payment_usecase

from conftest import DAY, FakeGateway, FakeStore, Repos

BUYER = Caller(user_id=7, role=UserRole.BUYER)
OTHER_BUYER = Caller(user_id=8, role=UserRole.BUYER)
PROVIDER = Caller(user_id=50, role=UserRole.PROVIDER)
ADMIN = Caller(user_id=1, role=UserRole.ADMIN)


async def _book(repos: Repos, caller: Caller = BUYER, *, start: time = time(10), end: time = time(11), **kwargs):
    return await uc.create_booking(
        repos.catalog,
        repos.slots,
        repos.bookings,
        caller=caller,
        offering_id=kwargs.pop("offering_id", 1),
        booking_date=kwargs.pop("booking_date", DAY),
        start_time=start,
        end_time=end,
        note=kwargs.pop("note", None),
    )


@pytest.mark.asyncio
async def test_create_booking_claims_slot_and_prices(store: FakeStore, repos: Repos) -> None:
    store.add_offering(base_price=Decimal("80.00"))
    slot = store.add_slot(price_multiplier=Decimal("1.25"))

    booking = await _book(repos, note="first dance")

    assert booking.status == BookingStatus.PENDING
    assert booking.slot_id == slot.id
    assert booking.total_price == Decimal("100.00")
    assert booking.provider_id == 50
    assert slot.is_available is False


@pytest.mark.asyncio
async def test_create_booking_precondition_order(store: FakeStore, repos: Repos) -> None:
    with pytest.raises(NotFoundError):
        await _book(repos)

    store.add_offering(provider_verified=False)
    with pytest.raises(UnverifiedProviderError):
        await _book(repos)


@pytest.mark.asyncio
async def test_create_booking_rejects_self_overlap(store: FakeStore, repos: Repos) -> None:
    store.add_offering(offering_id=1)
    store.add_offering(offering_id=2)
    store.add_slot(offering_id=1)
    store.add_slot(offering_id=2)
    await _book(repos, offering_id=1)

    with pytest.raises(SelfOverlapError):
        await _book(repos, offering_id=2, start=time(10, 30), end=time(11, 30))


@pytest.mark.asyncio
async def test_cancelled_booking_does_not_block_self(store: FakeStore, repos: Repos) -> None:
    store.add_offering()
    store.add_slot()
    store.add_booking(buyer_id=BUYER.user_id, status=BookingStatus.CANCELLED)
    booking = await _book(repos)
    assert booking.status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_failed_create_leaves_no_mutation(store: FakeStore, repos: Repos) -> None:
    store.add_offering()
    slot = store.add_slot(start=time(10), end=time(11))
    with pytest.raises(SlotUnavailableError):
        await _book(repos, start=time(10, 30), end=time(11, 30))
    assert slot.is_available is True
    assert store.bookings == {}


@pytest.mark.asyncio
async def test_only_buyers_create_bookings(store: FakeStore, repos: Repos) -> None:
    store.add_offering()
    store.add_slot()
    with pytest.raises(ForbiddenError):
        await _book(repos, PROVIDER)


@pytest.mark.asyncio
async def test_concurrent_requests_for_one_slot_book_once(store: FakeStore, repos: Repos) -> None:
    store.add_offering()
    slot = store.add_slot()

    results = await asyncio.gather(
        _book(repos, BUYER),
        _book(repos, OTHER_BUYER),
        return_exceptions=True,
    )

    booked = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(booked) == 1
    assert len(failed) == 1
    assert isinstance(failed[0], SlotUnavailableError)
    assert booked[0].slot_id == slot.id


@pytest.mark.asyncio
async def test_cancel_releases_slot_and_bumps_version(store: FakeStore, repos: Repos) -> None:
    slot = store.add_slot()
    booking = store.add_booking(slot=slot, status=BookingStatus.CONFIRMED)

    change = await uc.cancel_booking(repos.slots, repos.bookings, caller=BUYER, booking_id=booking.id)

    assert change.status_from == BookingStatus.CONFIRMED
    assert booking.status == BookingStatus.CANCELLED
    assert booking.version == 2
    assert slot.is_available is True


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", [BookingStatus.COMPLETED, BookingStatus.REJECTED, BookingStatus.CANCELLED])
async def test_cancel_terminal_booking_is_illegal(store: FakeStore, repos: Repos, terminal: BookingStatus) -> None:
    booking = store.add_booking(status=terminal)
    with pytest.raises(IllegalTransitionError):
        await uc.cancel_booking(repos.slots, repos.bookings, caller=BUYER, booking_id=booking.id)
    assert booking.status == terminal


@pytest.mark.asyncio
async def test_cancel_by_stranger_is_forbidden(store: FakeStore, repos: Repos) -> None:
    booking = store.add_booking()
    with pytest.raises(ForbiddenError):
        await uc.cancel_booking(repos.slots, repos.bookings, caller=OTHER_BUYER, booking_id=booking.id)


@pytest.mark.asyncio
async def test_cancel_missing_booking(repos: Repos) -> None:
    with pytest.raises(NotFoundError):
        await uc.cancel_booking(repos.slots, repos.bookings, caller=BUYER, booking_id=404)


@pytest.mark.asyncio
async def test_provider_rejects_pending_booking(store: FakeStore, repos: Repos) -> None:
    slot = store.add_slot()
    booking = store.add_booking(slot=slot)
    change = await uc.update_booking_status(
        repos.slots, repos.bookings, caller=PROVIDER, booking_id=booking.id, target=BookingStatus.REJECTED
    )
    assert change.booking.status == BookingStatus.REJECTED
    assert slot.is_available is True


@pytest.mark.asyncio
async def test_provider_cannot_confirm_directly(store: FakeStore, repos: Repos) -> None:
    booking = store.add_booking()
    with pytest.raises(ForbiddenError):
        await uc.update_booking_status(
            repos.slots, repos.bookings, caller=PROVIDER, booking_id=booking.id, target=BookingStatus.CONFIRMED
        )


@pytest.mark.asyncio
async def test_admin_completes_confirmed_booking_keeping_slot(store: FakeStore, repos: Repos) -> None:
    slot = store.add_slot()
    booking = store.add_booking(slot=slot, status=BookingStatus.CONFIRMED)
    await uc.update_booking_status(
        repos.slots, repos.bookings, caller=ADMIN, booking_id=booking.id, target=BookingStatus.COMPLETED
    )
    assert booking.status == BookingStatus.COMPLETED
    assert slot.is_available is False


@pytest.mark.asyncio
async def test_buyer_cannot_use_status_endpoint(store: FakeStore, repos: Repos) -> None:
    booking = store.add_booking()
    with pytest.raises(ForbiddenError):
        await uc.update_booking_status(
            repos.slots, repos.bookings, caller=BUYER, booking_id=booking.id, target=BookingStatus.CANCELLED
        )


@pytest.mark.asyncio
async def test_reschedule_moves_to_new_slot_and_reprices(store: FakeStore, repos: Repos) -> None:
    store.add_offering(base_price=Decimal("100.00"))
    old_slot = store.add_slot(start=time(10), end=time(11))
    new_slot = store.add_slot(start=time(14), end=time(15), price_multiplier=Decimal("1.50"))
    booking = store.add_booking(slot=old_slot)

    result = await uc.reschedule_booking(
        repos.slots,
        repos.bookings,
        repos.payments,
        repos.catalog,
        caller=BUYER,
        booking_id=booking.id,
        booking_date=DAY,
        start_time=time(14),
        end_time=time(15),
    )

    assert result.previous_slot_id == old_slot.id
    assert booking.slot_id == new_slot.id
    assert booking.start_time == time(14)
    assert booking.total_price == Decimal("150.00")
    assert booking.version == 2
    assert old_slot.is_available is True
    assert new_slot.is_available is False


@pytest.mark.asyncio
async def test_reschedule_keeps_price_after_completed_payment(store: FakeStore, repos: Repos) -> None:
    store.add_offering(base_price=Decimal("100.00"))
    old_slot = store.add_slot(start=time(10), end=time(11))
    store.add_slot(start=time(14), end=time(15), price_multiplier=Decimal("2.00"))
    booking = store.add_booking(slot=old_slot, status=BookingStatus.CONFIRMED)
    store.add_payment(booking, status=PaymentStatus.COMPLETED)

    await uc.reschedule_booking(
        repos.slots,
        repos.bookings,
        repos.payments,
        repos.catalog,
        caller=BUYER,
        booking_id=booking.id,
        booking_date=DAY,
        start_time=time(14),
        end_time=time(15),
    )

    assert booking.total_price == Decimal("100.00")


@pytest.mark.asyncio
async def test_reschedule_keeps_price_while_payment_pending(store: FakeStore, repos: Repos) -> None:
    store.add_offering(base_price=Decimal("100.00"))
    old_slot = store.add_slot(start=time(10), end=time(11))
    new_slot = store.add_slot(start=time(14), end=time(15), price_multiplier=Decimal("2.00"))
    booking = store.add_booking(slot=old_slot)
    payment = store.add_payment(booking, status=PaymentStatus.PENDING, intent_id="pi_1")

    await uc.reschedule_booking(
        repos.slots,
        repos.bookings,
        repos.payments,
        repos.catalog,
        caller=BUYER,
        booking_id=booking.id,
        booking_date=DAY,
        start_time=time(14),
        end_time=time(15),
    )
    assert booking.slot_id == new_slot.id
    assert booking.total_price == Decimal("100.00")

    # The in-flight intent then succeeds at the amount it was created with.
    await payment_usecase.handle_gateway_event(
        repos.slots,
        repos.bookings,
        repos.payments,
        repos.events,
        FakeGateway(),
        GatewayEventData(event_id="evt_1", kind="payment_intent.succeeded", intent_id="pi_1"),
    )
    assert payment.status == PaymentStatus.COMPLETED
    assert booking.status == BookingStatus.CONFIRMED
    assert payment.amount == booking.total_price


@pytest.mark.asyncio
async def test_reschedule_failure_keeps_old_slot_held(store: FakeStore, repos: Repos) -> None:
    store.add_offering()
    old_slot = store.add_slot(start=time(10), end=time(11))
    taken = store.add_slot(start=time(14), end=time(15))
    store.add_booking(slot=taken, buyer_id=OTHER_BUYER.user_id, start=time(14), end=time(15))
    booking = store.add_booking(slot=old_slot)

    with pytest.raises(SlotUnavailableError):
        await uc.reschedule_booking(
            repos.slots,
            repos.bookings,
            repos.payments,
            repos.catalog,
            caller=BUYER,
            booking_id=booking.id,
            booking_date=DAY,
            start_time=time(14),
            end_time=time(15),
        )

    assert old_slot.is_available is False
    assert booking.slot_id == old_slot.id
    assert booking.version == 1


@pytest.mark.asyncio
async def test_reschedule_within_held_slot_keeps_it(store: FakeStore, repos: Repos) -> None:
    store.add_offering()
    slot = store.add_slot(start=time(9), end=time(13))
    booking = store.add_booking(slot=slot, start=time(9), end=time(10))

    await uc.reschedule_booking(
        repos.slots,
        repos.bookings,
        repos.payments,
        repos.catalog,
        caller=BUYER,
        booking_id=booking.id,
        booking_date=DAY,
        start_time=time(11),
        end_time=time(12),
    )

    assert booking.slot_id == slot.id
    assert slot.is_available is False
    assert booking.start_time == time(11)


@pytest.mark.asyncio
async def test_reschedule_completed_booking_is_illegal(store: FakeStore, repos: Repos) -> None:
    booking = store.add_booking(status=BookingStatus.COMPLETED)
    with pytest.raises(IllegalTransitionError):
        await uc.reschedule_booking(
            repos.slots,
            repos.bookings,
            repos.payments,
            repos.catalog,
            caller=BUYER,
            booking_id=booking.id,
            booking_date=date(2030, 7, 1),
            start_time=time(10),
            end_time=time(11),
        )
