from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_current_caller, get_gateway, get_session
from ..domain.caller import Caller
from ..domain.errors import DomainError, GatewayTimeoutError
from ..domain.gateway import PaymentGateway
from ..infrastructure.repositories import (
    SqlAlchemyBookingRepository,
    SqlAlchemyPaymentRepository,
    SqlAlchemySlotRepository,
)
from ..models import PaymentStatus
from ..schemas import PaymentIntentCreate, PaymentIntentRead, PaymentRead, PaymentStatsRead, RefundCreate
from ..usecases import payments as payment_usecase
from ..usecases import reports as report_usecase
from ..utils.audit_log import emit_audit_log, initiator_for
from .errors import to_http_exception

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/intents", response_model=PaymentIntentRead, status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    payload: PaymentIntentCreate,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentIntentRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    payment_repo = SqlAlchemyPaymentRepository(session)
    try:
        async with session.begin():
            initiated = await payment_usecase.initiate_payment(
                slot_repo,
                booking_repo,
                payment_repo,
                gateway,
                caller=caller,
                booking_id=payload.booking_id,
                method=payload.payment_method,
                currency=get_settings().payment_currency,
            )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    payment = initiated.payment
    emit_audit_log(
        action="payment.initiated",
        initiator="buyer",
        user_id=caller.user_id,
        booking_id=payment.booking_id,
        payment_id=payment.id,
        status_to=payment.status,
        message="gateway timeout" if initiated.timed_out else None,
    )
    # The pending payment is committed; the outcome arrives with a later gateway event.
    if initiated.timed_out:
        raise to_http_exception(GatewayTimeoutError("payment gateway timed out; payment is pending"))

    return PaymentIntentRead(
        payment=PaymentRead.from_db(payment=payment),
        booking_status=initiated.booking.status,
        client_secret=initiated.client_secret,
    )


@router.get("", response_model=List[PaymentRead])
async def list_payments(
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> list[PaymentRead]:
    payment_repo = SqlAlchemyPaymentRepository(session)
    payments = await report_usecase.list_payments(payment_repo, caller=caller, status=status_filter)
    return [PaymentRead.from_db(payment=p) for p in payments]


@router.get("/stats/overview", response_model=PaymentStatsRead)
async def payment_stats(
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> PaymentStatsRead:
    payment_repo = SqlAlchemyPaymentRepository(session)
    try:
        stats = await report_usecase.payment_stats(payment_repo, caller=caller)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return PaymentStatsRead.from_stats(stats)


@router.get("/{payment_id}", response_model=PaymentRead)
async def get_payment(
    payment_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> PaymentRead:
    payment_repo = SqlAlchemyPaymentRepository(session)
    try:
        payment = await report_usecase.get_payment(payment_repo, caller=caller, payment_id=payment_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return PaymentRead.from_db(payment=payment)


@router.post("/{payment_id}/refund", response_model=PaymentRead)
async def refund_payment(
    payload: RefundCreate,
    payment_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    payment_repo = SqlAlchemyPaymentRepository(session)
    try:
        async with session.begin():
            payment = await payment_usecase.process_refund(
                slot_repo,
                booking_repo,
                payment_repo,
                gateway,
                caller=caller,
                payment_id=payment_id,
                amount=payload.amount,
                reason=payload.reason,
            )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    emit_audit_log(
        action="payment.refunded",
        initiator=initiator_for(caller.role),
        user_id=caller.user_id,
        booking_id=payment.booking_id,
        payment_id=payment.id,
        status_from=PaymentStatus.COMPLETED,
        status_to=payment.status,
        extra={"refunded_amount": payment.refunded_amount},
    )
    return PaymentRead.from_db(payment=payment)
