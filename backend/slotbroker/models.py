from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from enum import StrEnum
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Enum, ForeignKey, Index, Numeric, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import BigInteger, Date, DateTime, Integer, String, Text, Time


class Base(DeclarativeBase):
    pass


class UserRole(StrEnum):
    BUYER = "buyer"
    PROVIDER = "provider"
    ADMIN = "admin"


class BookingStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
LIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.COMPLETED)


def _str_enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class Provider(Base):
    """Catalog-owned provider profile; only read by the engine."""

    __tablename__ = "providers"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    offerings: Mapped[list["Offering"]] = relationship(back_populates="provider")


class Offering(Base):
    """Catalog-owned bookable service; only read by the engine."""

    __tablename__ = "offerings"
    __table_args__ = (Index("idx_offerings_provider", "provider_id"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    provider: Mapped["Provider"] = relationship(back_populates="offerings")
    slots: Mapped[list["Slot"]] = relationship(back_populates="offering")


class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="chk_slots_time"),
        CheckConstraint("price_multiplier > 0", name="chk_slots_multiplier"),
        UniqueConstraint("offering_id", "slot_date", "start_time", "end_time", name="uq_slots"),
        Index("idx_slots_offering_date", "offering_id", "slot_date"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    offering_id: Mapped[int] = mapped_column(ForeignKey("offerings.id"), nullable=False)
    slot_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    price_multiplier: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("1.00"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    offering: Mapped["Offering"] = relationship(back_populates="slots")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="chk_bookings_time"),
        Index("idx_bookings_buyer", "buyer_id"),
        Index("idx_bookings_provider", "provider_id"),
        Index("idx_bookings_offering_date", "offering_id", "booking_date"),
        Index("idx_bookings_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    buyer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    provider_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    offering_id: Mapped[int] = mapped_column(ForeignKey("offerings.id"), nullable=False)
    # Nullable: the slot row may vanish with its offering; the snapshot below stays authoritative.
    slot_id: Mapped[Optional[int]] = mapped_column(ForeignKey("slots.id"), nullable=True)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    price_multiplier: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("1.00"))
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _str_enum(BookingStatus),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    payments: Mapped[list["Payment"]] = relationship(back_populates="booking")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("gateway_intent_id", name="uq_payments_intent"),
        Index("idx_payments_booking", "booking_id"),
        Index("idx_payments_buyer", "buyer_id"),
        Index("idx_payments_provider", "provider_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False)
    buyer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    provider_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    method: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        _str_enum(PaymentStatus),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    gateway_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    refunded_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="payments")


class GatewayEvent(Base):
    """One row per applied gateway notification, keyed by the gateway's event id."""

    __tablename__ = "gateway_events"
    __table_args__ = (UniqueConstraint("event_id", name="uq_gateway_events_event"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
