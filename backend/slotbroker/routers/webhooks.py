import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_gateway, get_session
from ..domain.errors import DomainError, InvalidSignatureError
from ..domain.gateway import PaymentGateway
from ..infrastructure.repositories import (
    SqlAlchemyBookingRepository,
    SqlAlchemyGatewayEventRepository,
    SqlAlchemyPaymentRepository,
    SqlAlchemySlotRepository,
)
from ..schemas import WebhookAck
from ..usecases import payments as payment_usecase
from ..utils.audit_log import emit_audit_log
from .errors import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
) -> WebhookAck:
    payload = await request.body()
    try:
        event = gateway.parse_event(payload, stripe_signature)
    except InvalidSignatureError as exc:
        raise to_http_exception(exc) from exc
    except DomainError as exc:
        logger.error("webhook rejected before processing: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": exc.code, "message": str(exc)},
        ) from exc

    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    payment_repo = SqlAlchemyPaymentRepository(session)
    event_repo = SqlAlchemyGatewayEventRepository(session)
    try:
        async with session.begin():
            result = await payment_usecase.handle_gateway_event(
                slot_repo,
                booking_repo,
                payment_repo,
                event_repo,
                gateway,
                event,
            )
    except DomainError as exc:
        # Non-2xx makes the gateway deliver the event again later.
        logger.warning("webhook event %s not applied: %s", event.event_id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": exc.code, "message": str(exc)},
        ) from exc

    if result.outcome == payment_usecase.EventOutcome.APPLIED:
        emit_audit_log(
            action="payment.event_applied",
            initiator="gateway",
            user_id=None,
            booking_id=result.booking_id,
            payment_id=result.payment_id,
            status_to=result.payment_status,
            extra={"event_id": event.event_id, "event_type": event.kind, "booking_status": result.booking_status},
        )
    return WebhookAck(outcome=result.outcome.value)
