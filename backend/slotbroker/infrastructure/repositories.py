from __future__ import annotations

import logging
from datetime import date, time
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from sqlalchemy import Select, case, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.repositories import (
    BookingRepository,
    CatalogRepository,
    GatewayEventRepository,
    PaymentRepository,
    SlotRepository,
)
from ..domain.services import OfferingSnapshot
from ..models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    GatewayEvent,
    Offering,
    Payment,
    PaymentStatus,
    Provider,
    Slot,
)
from ..utils.time import utc_now_naive

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _read_with_retry(session: AsyncSession, read: Callable[[], Awaitable[T]]) -> T:
    """
    Run an idempotent read, retrying once after a dropped connection.
    Only used by read paths that run outside a write transaction; write paths
    go through the *_for_update / lock_* methods, which never retry.
    """
    try:
        return await read()
    except OperationalError:
        logger.warning("read failed with OperationalError, retrying once", exc_info=True)
        await session.rollback()
        return await read()


class SqlAlchemyCatalogRepository(CatalogRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_offering(self, offering_id: int) -> OfferingSnapshot | None:
        stmt: Select[Tuple[Offering, Provider]] = (
            select(Offering, Provider)
            .join(Provider, Offering.provider_id == Provider.id)
            .where(Offering.id == offering_id)
        )
        row = (await self.session.execute(stmt)).first()
        if row is None:
            return None
        offering, provider = row
        return OfferingSnapshot(
            offering_id=offering.id,
            provider_id=provider.id,
            is_active=offering.is_active,
            provider_verified=provider.is_verified,
            base_price=offering.base_price,
        )


class SqlAlchemySlotRepository(SlotRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def lock_overlapping(
        self,
        offering_id: int,
        slot_date: date,
        start: time,
        end: time,
    ) -> List[Slot]:
        # Ordered locking keeps concurrent overlapping requests from deadlocking.
        stmt = (
            select(Slot)
            .where(
                Slot.offering_id == offering_id,
                Slot.slot_date == slot_date,
                Slot.start_time < end,
                Slot.end_time > start,
            )
            .order_by(Slot.id)
            .with_for_update()
        )
        result = await self.session.scalars(stmt)
        return list(result.all())

    async def claim(self, slot_id: int) -> bool:
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id, Slot.is_available.is_(True))
            .values(is_available=False, updated_at=utc_now_naive())
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount == 1)

    async def release(self, slot_id: int) -> bool:
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id)
            .values(is_available=True, updated_at=utc_now_naive())
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def create(
        self,
        *,
        offering_id: int,
        slot_date: date,
        start_time: time,
        end_time: time,
        price_multiplier: Decimal,
    ) -> Slot:
        now = utc_now_naive()
        slot = Slot(
            offering_id=offering_id,
            slot_date=slot_date,
            start_time=start_time,
            end_time=end_time,
            is_available=True,
            price_multiplier=price_multiplier,
            created_at=now,
            updated_at=now,
        )
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def list_for_offering(
        self,
        offering_id: int,
        slot_date: date | None,
        include_unavailable: bool,
    ) -> List[Slot]:
        stmt = select(Slot).where(Slot.offering_id == offering_id)
        if slot_date is not None:
            stmt = stmt.where(Slot.slot_date == slot_date)
        if not include_unavailable:
            stmt = stmt.where(Slot.is_available.is_(True))
        stmt = stmt.order_by(Slot.slot_date, Slot.start_time)

        async def read() -> List[Slot]:
            return list((await self.session.scalars(stmt)).all())

        return await _read_with_retry(self.session, read)


class SqlAlchemyBookingRepository(BookingRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _active_overlap(
        self,
        booking_date: date,
        start: time,
        end: time,
        exclude_booking_id: int | None,
    ) -> Select[Tuple[int]]:
        stmt = select(Booking.id).where(
            Booking.booking_date == booking_date,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.start_time < end,
            Booking.end_time > start,
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        return stmt.limit(1)

    async def buyer_has_overlap(
        self,
        buyer_id: int,
        booking_date: date,
        start: time,
        end: time,
        exclude_booking_id: int | None = None,
    ) -> bool:
        stmt = self._active_overlap(booking_date, start, end, exclude_booking_id).where(
            Booking.buyer_id == buyer_id
        )
        return await self.session.scalar(stmt) is not None

    async def offering_has_overlap(
        self,
        offering_id: int,
        booking_date: date,
        start: time,
        end: time,
        exclude_booking_id: int | None = None,
    ) -> bool:
        stmt = self._active_overlap(booking_date, start, end, exclude_booking_id).where(
            Booking.offering_id == offering_id
        )
        return await self.session.scalar(stmt) is not None

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
    ) -> Booking:
        now = utc_now_naive()
        booking = Booking(
            buyer_id=buyer_id,
            provider_id=provider_id,
            offering_id=offering_id,
            slot_id=slot_id,
            booking_date=booking_date,
            start_time=start_time,
            end_time=end_time,
            price_multiplier=price_multiplier,
            total_price=total_price,
            status=BookingStatus.PENDING,
            note=note,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def get(self, booking_id: int) -> Booking | None:
        async def read() -> Booking | None:
            return await self.session.get(Booking, booking_id)

        return await _read_with_retry(self.session, read)

    async def get_for_update(self, booking_id: int) -> Booking | None:
        stmt = select(Booking).where(Booking.id == booking_id).with_for_update()
        return await self.session.scalar(stmt)

    async def save(self, booking: Booking) -> Booking:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def list_for(
        self,
        *,
        buyer_id: int | None = None,
        provider_id: int | None = None,
        status: BookingStatus | None = None,
    ) -> List[Booking]:
        stmt = select(Booking)
        if buyer_id is not None:
            stmt = stmt.where(Booking.buyer_id == buyer_id)
        if provider_id is not None:
            stmt = stmt.where(Booking.provider_id == provider_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status)
        stmt = stmt.order_by(Booking.created_at.desc(), Booking.id.desc())

        async def read() -> List[Booking]:
            return list((await self.session.scalars(stmt)).all())

        return await _read_with_retry(self.session, read)

    async def status_summary(self, provider_id: int | None = None) -> List[Tuple[BookingStatus, int, Decimal]]:
        stmt: Select[Tuple[Any, ...]] = select(
            Booking.status,
            func.count(Booking.id),
            func.coalesce(func.sum(Booking.total_price), 0),
        ).group_by(Booking.status)
        if provider_id is not None:
            stmt = stmt.where(Booking.provider_id == provider_id)

        async def read() -> List[Tuple[BookingStatus, int, Decimal]]:
            rows = await self.session.execute(stmt)
            return [(BookingStatus(s), int(n), Decimal(total)) for s, n, total in rows.all()]

        return await _read_with_retry(self.session, read)


class SqlAlchemyPaymentRepository(PaymentRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_for_booking(self, booking_id: int) -> List[Payment]:
        stmt = select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.id)
        return list((await self.session.scalars(stmt)).all())

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
    ) -> Payment:
        now = utc_now_naive()
        payment = Payment(
            booking_id=booking_id,
            buyer_id=buyer_id,
            provider_id=provider_id,
            amount=amount,
            currency=currency,
            method=method,
            status=PaymentStatus.PENDING,
            gateway_intent_id=gateway_intent_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get(self, payment_id: int) -> Payment | None:
        async def read() -> Payment | None:
            return await self.session.get(Payment, payment_id)

        return await _read_with_retry(self.session, read)

    async def get_for_update(self, payment_id: int) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id).with_for_update()
        return await self.session.scalar(stmt)

    async def get_by_intent_for_update(self, intent_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.gateway_intent_id == intent_id).with_for_update()
        return await self.session.scalar(stmt)

    async def get_unlinked_pending_for_update(self, booking_id: int) -> Payment | None:
        stmt = (
            select(Payment)
            .where(
                Payment.booking_id == booking_id,
                Payment.status == PaymentStatus.PENDING,
                Payment.gateway_intent_id.is_(None),
            )
            .order_by(Payment.id.desc())
            .limit(1)
            .with_for_update()
        )
        return await self.session.scalar(stmt)

    async def save(self, payment: Payment) -> Payment:
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def list_for(
        self,
        *,
        buyer_id: int | None = None,
        provider_id: int | None = None,
        status: PaymentStatus | None = None,
    ) -> List[Payment]:
        stmt = select(Payment)
        if buyer_id is not None:
            stmt = stmt.where(Payment.buyer_id == buyer_id)
        if provider_id is not None:
            stmt = stmt.where(Payment.provider_id == provider_id)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        stmt = stmt.order_by(Payment.created_at.desc(), Payment.id.desc())

        async def read() -> List[Payment]:
            return list((await self.session.scalars(stmt)).all())

        return await _read_with_retry(self.session, read)

    async def status_summary(
        self, provider_id: int | None = None
    ) -> List[Tuple[PaymentStatus, int, Decimal, Decimal]]:
        refunded = case(
            (Payment.refunded_amount.is_not(None), Payment.refunded_amount),
            else_=Payment.amount,
        )
        stmt: Select[Tuple[Any, ...]] = select(
            Payment.status,
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(refunded), 0),
        ).group_by(Payment.status)
        if provider_id is not None:
            stmt = stmt.where(Payment.provider_id == provider_id)

        async def read() -> List[Tuple[PaymentStatus, int, Decimal, Decimal]]:
            rows = await self.session.execute(stmt)
            return [
                (PaymentStatus(s), int(n), Decimal(amount), Decimal(refund_total))
                for s, n, amount, refund_total in rows.all()
            ]

        return await _read_with_retry(self.session, read)


class SqlAlchemyGatewayEventRepository(GatewayEventRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(self, event_id: str) -> bool:
        stmt = select(GatewayEvent.id).where(GatewayEvent.event_id == event_id)
        return await self.session.scalar(stmt) is not None

    async def record(self, *, event_id: str, event_type: str, intent_id: Optional[str], outcome: str) -> bool:
        # Savepoint so a duplicate key leaves the outer transaction usable.
        try:
            async with self.session.begin_nested():
                self.session.add(
                    GatewayEvent(
                        event_id=event_id,
                        event_type=event_type,
                        intent_id=intent_id,
                        outcome=outcome,
                        processed_at=utc_now_naive(),
                    )
                )
        except IntegrityError:
            logger.info("gateway event %s already stored", event_id)
            return False
        return True
