from fastapi import HTTPException, status

from ..domain.errors import (
    DomainError,
    DuplicatePaymentError,
    ForbiddenError,
    GatewayError,
    GatewayTimeoutError,
    IllegalTransitionError,
    InvalidRequestError,
    InvalidSignatureError,
    NotFoundError,
    SelfOverlapError,
    SlotUnavailableError,
    UnverifiedProviderError,
)

# Order matters: GatewayTimeoutError must be matched before GatewayError.
_STATUS_BY_ERROR: tuple[tuple[type[DomainError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UnverifiedProviderError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (SlotUnavailableError, status.HTTP_409_CONFLICT),
    (SelfOverlapError, status.HTTP_409_CONFLICT),
    (IllegalTransitionError, status.HTTP_409_CONFLICT),
    (DuplicatePaymentError, status.HTTP_409_CONFLICT),
    (InvalidSignatureError, status.HTTP_400_BAD_REQUEST),
    (GatewayTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST),
)


def status_for(exc: DomainError) -> int:
    for error_cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(exc: DomainError) -> HTTPException:
    return HTTPException(
        status_code=status_for(exc),
        detail={"code": exc.code, "message": str(exc) or exc.code},
    )
