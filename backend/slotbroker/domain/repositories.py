from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from typing import Protocol

from ..models import Booking, BookingStatus, Payment, PaymentStatus, Slot
from .services import OfferingSnapshot


class CatalogRepository(Protocol):
    async def get_offering(self, offering_id: int) -> OfferingSnapshot | None: ...


class SlotRepository(Protocol):
    async def lock_overlapping(
        self,
        offering_id: int,
        slot_date: date,
        start: time,
        end: time,
    ) -> list[Slot]: ...

    async def claim(self, slot_id: int) -> bool: ...

    async def release(self, slot_id: int) -> bool: ...

    async def create(
        self,
        *,
        offering_id: int,
        slot_date: date,
        start_time: time,
        end_time: time,
        price_multiplier: Decimal,
    ) -> Slot: ...

    async def list_for_offering(
        self,
        offering_id: int,
        slot_date: date | None,
        include_unavailable: bool,
    ) -> list[Slot]: ...


class BookingRepository(Protocol):
    async def buyer_has_overlap(
        self,
        buyer_id: int,
        booking_date: date,
        start: time,
        end: time,
        exclude_booking_id: int | None = None,
    ) -> bool: ...

    async def offering_has_overlap(
        self,
        offering_id: int,
        booking_date: date,
        start: time,
        end: time,
        exclude_booking_id: int | None = None,
    ) -> bool: ...

    async def create(
        self,
        *,
        buyer_id: int,
        provider_id: int,
        offering_id: int,
        slot_id: int,
        booking_date: date,
        start_time: time,
        end_time: time,
        price_multiplier: Decimal,
        total_price: Decimal,
        note: str | None,
    ) -> Booking: ...

    async def get(self, booking_id: int) -> Booking | None: ...

    async def get_for_update(self, booking_id: int) -> Booking | None: ...

    async def save(self, booking: Booking) -> Booking: ...

    async def list_for(
        self,
        *,
        buyer_id: int | None = None,
        provider_id: int | None = None,
        status: BookingStatus | None = None,
    ) -> list[Booking]: ...

    async def status_summary(self, provider_id: int | None = None) -> list[tuple[BookingStatus, int, Decimal]]: ...


class PaymentRepository(Protocol):
    async def list_for_booking(self, booking_id: int) -> list[Payment]: ...

    async def create(
        self,
        *,
        booking_id: int,
        buyer_id: int,
        provider_id: int,
        amount: Decimal,
        currency: str,
        method: str | None,
        gateway_intent_id: str | None,
    ) -> Payment: ...

    async def get(self, payment_id: int) -> Payment | None: ...

    async def get_for_update(self, payment_id: int) -> Payment | None: ...

    async def get_by_intent_for_update(self, intent_id: str) -> Payment | None: ...

    async def get_unlinked_pending_for_update(self, booking_id: int) -> Payment | None: ...

    async def save(self, payment: Payment) -> Payment: ...

    async def list_for(
        self,
        *,
        buyer_id: int | None = None,
        provider_id: int | None = None,
        status: PaymentStatus | None = None,
    ) -> list[Payment]: ...

    async def status_summary(
        self, provider_id: int | None = None
    ) -> list[tuple[PaymentStatus, int, Decimal, Decimal]]: ...


class GatewayEventRepository(Protocol):
    async def exists(self, event_id: str) -> bool: ...

    async def record(self, *, event_id: str, event_type: str, intent_id: str | None, outcome: str) -> bool:
        """Store a processed event id. Returns False when the id is already stored."""
        ...
