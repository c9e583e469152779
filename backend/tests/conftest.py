import asyncio
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Mapping, Optional

import pytest
from slotbroker.domain.errors import GatewayError
from slotbroker.domain.gateway import GatewayEventData, IntentResult, RefundResult
from slotbroker.domain.services import OfferingSnapshot
from slotbroker.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    Payment,
    PaymentStatus,
    Slot,
)

NOW = datetime(2030, 6, 1, 9, 0, 0)
DAY = date(2030, 6, 15)


def _overlaps(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and b_start < a_end


class FakeStore:
    """In-memory tables shared by the fake repositories."""

    def __init__(self) -> None:
        self.offerings: dict[int, OfferingSnapshot] = {}
        self.slots: dict[int, Slot] = {}
        self.bookings: dict[int, Booking] = {}
        self.payments: dict[int, Payment] = {}
        self.events: dict[str, str] = {}
        self._ids: dict[str, int] = {}

    def next_id(self, table: str) -> int:
        self._ids[table] = self._ids.get(table, 0) + 1
        return self._ids[table]

    def add_offering(
        self,
        *,
        offering_id: int = 1,
        provider_id: int = 50,
        base_price: Decimal = Decimal("100.00"),
        is_active: bool = True,
        provider_verified: bool = True,
    ) -> OfferingSnapshot:
        snapshot = OfferingSnapshot(
            offering_id=offering_id,
            provider_id=provider_id,
            is_active=is_active,
            provider_verified=provider_verified,
            base_price=base_price,
        )
        self.offerings[offering_id] = snapshot
        return snapshot

    def add_slot(
        self,
        *,
        offering_id: int = 1,
        slot_date: date = DAY,
        start: time = time(10, 0),
        end: time = time(12, 0),
        is_available: bool = True,
        price_multiplier: Decimal = Decimal("1.00"),
    ) -> Slot:
        slot = Slot(
            id=self.next_id("slots"),
            offering_id=offering_id,
            slot_date=slot_date,
            start_time=start,
            end_time=end,
            is_available=is_available,
            price_multiplier=price_multiplier,
            created_at=NOW,
            updated_at=NOW,
        )
        self.slots[slot.id] = slot
        return slot

    def add_booking(
        self,
        *,
        slot: Optional[Slot] = None,
        buyer_id: int = 7,
        provider_id: int = 50,
        offering_id: int = 1,
        booking_date: date = DAY,
        start: time = time(10, 0),
        end: time = time(11, 0),
        status: BookingStatus = BookingStatus.PENDING,
        total_price: Decimal = Decimal("100.00"),
    ) -> Booking:
        if slot is not None:
            slot.is_available = False
        booking = Booking(
            id=self.next_id("bookings"),
            buyer_id=buyer_id,
            provider_id=provider_id,
            offering_id=offering_id,
            slot_id=slot.id if slot is not None else None,
            booking_date=booking_date,
            start_time=start,
            end_time=end,
            price_multiplier=Decimal("1.00"),
            total_price=total_price,
            status=status,
            note=None,
            version=1,
            created_at=NOW,
            updated_at=NOW,
        )
        self.bookings[booking.id] = booking
        return booking

    def add_payment(
        self,
        booking: Booking,
        *,
        status: PaymentStatus = PaymentStatus.PENDING,
        intent_id: Optional[str] = "pi_test_1",
        amount: Optional[Decimal] = None,
    ) -> Payment:
        payment = Payment(
            id=self.next_id("payments"),
            booking_id=booking.id,
            buyer_id=booking.buyer_id,
            provider_id=booking.provider_id,
            amount=amount if amount is not None else booking.total_price,
            currency="GBP",
            method=None,
            status=status,
            gateway_intent_id=intent_id,
            gateway_refund_id=None,
            refunded_amount=None,
            refund_reason=None,
            created_at=NOW,
            updated_at=NOW,
        )
        self.payments[payment.id] = payment
        return payment


class FakeCatalogRepo:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def get_offering(self, offering_id: int) -> Optional[OfferingSnapshot]:
        return self.store.offerings.get(offering_id)


class FakeSlotRepo:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def lock_overlapping(self, offering_id: int, slot_date: date, start: time, end: time) -> list[Slot]:
        # Yield so concurrent callers interleave the way separate transactions would.
        await asyncio.sleep(0)
        return sorted(
            (
                s
                for s in self.store.slots.values()
                if s.offering_id == offering_id
                and s.slot_date == slot_date
                and _overlaps(s.start_time, s.end_time, start, end)
            ),
            key=lambda s: s.id,
        )

    async def claim(self, slot_id: int) -> bool:
        await asyncio.sleep(0)
        slot = self.store.slots.get(slot_id)
        if slot is None or not slot.is_available:
            return False
        slot.is_available = False
        return True

    async def release(self, slot_id: int) -> bool:
        slot = self.store.slots.get(slot_id)
        if slot is None:
            return False
        slot.is_available = True
        return True

    async def create(
        self,
        *,
        offering_id: int,
        slot_date: date,
        start_time: time,
        end_time: time,
        price_multiplier: Decimal,
    ) -> Slot:
        return self.store.add_slot(
            offering_id=offering_id,
            slot_date=slot_date,
            start=start_time,
            end=end_time,
            price_multiplier=price_multiplier,
        )

    async def list_for_offering(
        self, offering_id: int, slot_date: Optional[date], include_unavailable: bool
    ) -> list[Slot]:
        return [
            s
            for s in self.store.slots.values()
            if s.offering_id == offering_id
            and (slot_date is None or s.slot_date == slot_date)
            and (include_unavailable or s.is_available)
        ]


class FakeBookingRepo:
    def __init__(self, store: FakeStore) -> None:
        self.store = store
        self.saved: list[int] = []

    def _active_overlapping(
        self, booking_date: date, start: time, end: time, exclude_booking_id: Optional[int]
    ) -> list[Booking]:
        return [
            b
            for b in self.store.bookings.values()
            if b.booking_date == booking_date
            and b.status in ACTIVE_BOOKING_STATUSES
            and b.id != exclude_booking_id
            and _overlaps(b.start_time, b.end_time, start, end)
        ]

    async def buyer_has_overlap(
        self,
        buyer_id: int,
        booking_date: date,
        start: time,
        end: time,
        exclude_booking_id: Optional[int] = None,
    ) -> bool:
        return any(b.buyer_id == buyer_id for b in self._active_overlapping(booking_date, start, end, exclude_booking_id))

    async def offering_has_overlap(
        self,
        offering_id: int,
        booking_date: date,
        start: time,
        end: time,
        exclude_booking_id: Optional[int] = None,
    ) -> bool:
        return any(
            b.offering_id == offering_id for b in self._active_overlapping(booking_date, start, end, exclude_booking_id)
        )

    async def create(self, **kwargs: Any) -> Booking:
        booking = Booking(
            id=self.store.next_id("bookings"),
            status=BookingStatus.PENDING,
            version=1,
            created_at=NOW,
            updated_at=NOW,
            **kwargs,
        )
        self.store.bookings[booking.id] = booking
        return booking

    async def get(self, booking_id: int) -> Optional[Booking]:
        return self.store.bookings.get(booking_id)

    async def get_for_update(self, booking_id: int) -> Optional[Booking]:
        return self.store.bookings.get(booking_id)

    async def save(self, booking: Booking) -> Booking:
        self.saved.append(booking.id)
        return booking

    async def list_for(
        self,
        *,
        buyer_id: Optional[int] = None,
        provider_id: Optional[int] = None,
        status: Optional[BookingStatus] = None,
    ) -> list[Booking]:
        return [
            b
            for b in self.store.bookings.values()
            if (buyer_id is None or b.buyer_id == buyer_id)
            and (provider_id is None or b.provider_id == provider_id)
            and (status is None or b.status == status)
        ]

    async def status_summary(self, provider_id: Optional[int] = None) -> list[tuple[BookingStatus, int, Decimal]]:
        summary: dict[BookingStatus, tuple[int, Decimal]] = {}
        for b in self.store.bookings.values():
            if provider_id is not None and b.provider_id != provider_id:
                continue
            count, total = summary.get(b.status, (0, Decimal("0")))
            summary[b.status] = (count + 1, total + b.total_price)
        return [(s, n, total) for s, (n, total) in summary.items()]


class FakePaymentRepo:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def list_for_booking(self, booking_id: int) -> list[Payment]:
        return sorted((p for p in self.store.payments.values() if p.booking_id == booking_id), key=lambda p: p.id)

    async def create(
        self,
        *,
        booking_id: int,
        buyer_id: int,
        provider_id: int,
        amount: Decimal,
        currency: str,
        method: Optional[str],
        gateway_intent_id: Optional[str],
    ) -> Payment:
        payment = Payment(
            id=self.store.next_id("payments"),
            booking_id=booking_id,
            buyer_id=buyer_id,
            provider_id=provider_id,
            amount=amount,
            currency=currency,
            method=method,
            status=PaymentStatus.PENDING,
            gateway_intent_id=gateway_intent_id,
            gateway_refund_id=None,
            refunded_amount=None,
            refund_reason=None,
            created_at=NOW,
            updated_at=NOW,
        )
        self.store.payments[payment.id] = payment
        return payment

    async def get(self, payment_id: int) -> Optional[Payment]:
        return self.store.payments.get(payment_id)

    async def get_for_update(self, payment_id: int) -> Optional[Payment]:
        return self.store.payments.get(payment_id)

    async def get_by_intent_for_update(self, intent_id: str) -> Optional[Payment]:
        return next((p for p in self.store.payments.values() if p.gateway_intent_id == intent_id), None)

    async def get_unlinked_pending_for_update(self, booking_id: int) -> Optional[Payment]:
        candidates = [
            p
            for p in self.store.payments.values()
            if p.booking_id == booking_id and p.status == PaymentStatus.PENDING and p.gateway_intent_id is None
        ]
        return max(candidates, key=lambda p: p.id) if candidates else None

    async def save(self, payment: Payment) -> Payment:
        return payment

    async def list_for(
        self,
        *,
        buyer_id: Optional[int] = None,
        provider_id: Optional[int] = None,
        status: Optional[PaymentStatus] = None,
    ) -> list[Payment]:
        return [
            p
            for p in self.store.payments.values()
            if (buyer_id is None or p.buyer_id == buyer_id)
            and (provider_id is None or p.provider_id == provider_id)
            and (status is None or p.status == status)
        ]

    async def status_summary(
        self, provider_id: Optional[int] = None
    ) -> list[tuple[PaymentStatus, int, Decimal, Decimal]]:
        summary: dict[PaymentStatus, tuple[int, Decimal, Decimal]] = {}
        for p in self.store.payments.values():
            if provider_id is not None and p.provider_id != provider_id:
                continue
            count, amount, refunded = summary.get(p.status, (0, Decimal("0"), Decimal("0")))
            refund = p.refunded_amount if p.refunded_amount is not None else p.amount
            summary[p.status] = (count + 1, amount + p.amount, refunded + refund)
        return [(s, n, amount, refunded) for s, (n, amount, refunded) in summary.items()]


class FakeEventRepo:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def exists(self, event_id: str) -> bool:
        return event_id in self.store.events

    async def record(self, *, event_id: str, event_type: str, intent_id: Optional[str], outcome: str) -> bool:
        if event_id in self.store.events:
            return False
        self.store.events[event_id] = str(outcome)
        return True


class FakeGateway:
    def __init__(self) -> None:
        self.intent_status = "requires_confirmation"
        self.create_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.intents: list[dict[str, Any]] = []
        self.refunds: list[dict[str, Any]] = []
        self.next_event: Optional[GatewayEventData] = None

    async def create_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        method: Optional[str],
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> IntentResult:
        self.intents.append(
            {
                "amount": amount,
                "currency": currency,
                "method": method,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
            }
        )
        if self.create_error is not None:
            raise self.create_error
        return IntentResult(
            intent_id=f"pi_fake_{len(self.intents)}",
            status=self.intent_status,
            client_secret=f"secret_{len(self.intents)}",
        )

    async def create_refund(
        self,
        *,
        intent_id: str,
        amount: Decimal,
        reason: Optional[str],
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        self.refunds.append(
            {"intent_id": intent_id, "amount": amount, "reason": reason, "idempotency_key": idempotency_key}
        )
        if self.refund_error is not None:
            raise self.refund_error
        return RefundResult(refund_id=f"re_fake_{len(self.refunds)}", status="succeeded", amount=amount)

    def parse_event(self, payload: bytes, signature: Optional[str]) -> GatewayEventData:
        if self.next_event is None:
            raise GatewayError("no event queued")
        return self.next_event


@dataclass
class Repos:
    catalog: FakeCatalogRepo
    slots: FakeSlotRepo
    bookings: FakeBookingRepo
    payments: FakePaymentRepo
    events: FakeEventRepo


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def repos(store: FakeStore) -> Repos:
    return Repos(
        catalog=FakeCatalogRepo(store),
        slots=FakeSlotRepo(store),
        bookings=FakeBookingRepo(store),
        payments=FakePaymentRepo(store),
        events=FakeEventRepo(store),
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


class DummySession:
    """Minimal async session stub that supports `async with session.begin()`."""

    async def __aenter__(self) -> "DummySession":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def begin(self) -> "DummySession":
        return self


@pytest.fixture
def session() -> DummySession:
    return DummySession()
