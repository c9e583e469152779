from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_serializer, model_validator

from .models import Booking, BookingStatus, Payment, PaymentStatus, Slot
from .usecases.reports import BookingStats, PaymentStats


class _Window(BaseModel):
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def _check_window(self) -> "_Window":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be earlier than end_time")
        return self


class SlotCreate(_Window):
    slot_date: date
    price_multiplier: Decimal = Field(default=Decimal("1.00"), gt=0, max_digits=5, decimal_places=2)


class SlotRead(BaseModel):
    slot_id: int
    offering_id: int
    slot_date: date
    start_time: time
    end_time: time
    is_available: bool
    price_multiplier: Decimal

    @field_serializer("price_multiplier")
    def _ser_decimal(self, value: Decimal) -> str:
        return str(value)

    @classmethod
    def from_db(cls, *, slot: Slot) -> "SlotRead":
        return cls(
            slot_id=slot.id,
            offering_id=slot.offering_id,
            slot_date=slot.slot_date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            is_available=slot.is_available,
            price_multiplier=slot.price_multiplier,
        )


class BookingCreate(_Window):
    offering_id: int = Field(ge=1)
    booking_date: date
    note: Optional[str] = Field(default=None, max_length=2000)


class BookingUpdate(_Window):
    booking_date: date
    note: Optional[str] = Field(default=None, max_length=2000)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class BookingRead(BaseModel):
    booking_id: int
    buyer_id: int
    provider_id: int
    offering_id: int
    slot_id: Optional[int]
    booking_date: date
    start_time: time
    end_time: time
    price_multiplier: Decimal
    total_price: Decimal
    status: BookingStatus
    note: Optional[str]
    version: int
    created_at: datetime
    updated_at: datetime

    @field_serializer("price_multiplier", "total_price")
    def _ser_decimal(self, value: Decimal) -> str:
        return str(value)

    @classmethod
    def from_db(cls, *, booking: Booking) -> "BookingRead":
        return cls(
            booking_id=booking.id,
            buyer_id=booking.buyer_id,
            provider_id=booking.provider_id,
            offering_id=booking.offering_id,
            slot_id=booking.slot_id,
            booking_date=booking.booking_date,
            start_time=booking.start_time,
            end_time=booking.end_time,
            price_multiplier=booking.price_multiplier,
            total_price=booking.total_price,
            status=booking.status,
            note=booking.note,
            version=booking.version,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class PaymentIntentCreate(BaseModel):
    booking_id: int = Field(ge=1)
    payment_method: Optional[str] = Field(default=None, max_length=255)


class RefundCreate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    reason: Optional[str] = Field(default=None, max_length=255)


class PaymentRead(BaseModel):
    payment_id: int
    booking_id: int
    buyer_id: int
    provider_id: int
    amount: Decimal
    currency: str
    method: Optional[str]
    status: PaymentStatus
    gateway_intent_id: Optional[str]
    refunded_amount: Optional[Decimal]
    refund_reason: Optional[str]
    created_at: datetime
    updated_at: datetime

    @field_serializer("amount", "refunded_amount")
    def _ser_decimal(self, value: Optional[Decimal]) -> Optional[str]:
        return None if value is None else str(value)

    @classmethod
    def from_db(cls, *, payment: Payment) -> "PaymentRead":
        return cls(
            payment_id=payment.id,
            booking_id=payment.booking_id,
            buyer_id=payment.buyer_id,
            provider_id=payment.provider_id,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.method,
            status=payment.status,
            gateway_intent_id=payment.gateway_intent_id,
            refunded_amount=payment.refunded_amount,
            refund_reason=payment.refund_reason,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class PaymentIntentRead(BaseModel):
    payment: PaymentRead
    booking_status: BookingStatus
    client_secret: Optional[str]


class BookingStatsRead(BaseModel):
    counts: dict[str, int]
    total: int
    total_revenue: Decimal

    @field_serializer("total_revenue")
    def _ser_decimal(self, value: Decimal) -> str:
        return str(value)

    @classmethod
    def from_stats(cls, stats: BookingStats) -> "BookingStatsRead":
        return cls(counts=stats.counts, total=stats.total, total_revenue=stats.completed_revenue)


class PaymentStatsRead(BaseModel):
    counts: dict[str, int]
    total: int
    total_revenue: Decimal
    total_refunds: Decimal
    net_revenue: Decimal

    @field_serializer("total_revenue", "total_refunds", "net_revenue")
    def _ser_decimal(self, value: Decimal) -> str:
        return str(value)

    @classmethod
    def from_stats(cls, stats: PaymentStats) -> "PaymentStatsRead":
        return cls(
            counts=stats.counts,
            total=stats.total,
            total_revenue=stats.total_revenue,
            total_refunds=stats.total_refunds,
            net_revenue=stats.net_revenue,
        )


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
