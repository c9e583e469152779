from typing import AsyncIterator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session
from .domain.caller import Caller
from .domain.gateway import PaymentGateway
from .infrastructure.stripe_gateway import StripeGateway
from .utils.auth import decode_access_token

_bearer = HTTPBearer(auto_error=False)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> Caller:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("bearer token required")
    settings = get_settings()
    try:
        return decode_access_token(
            credentials.credentials,
            secret=settings.auth_secret,
            algorithms=[settings.auth_algorithm],
        )
    except ValueError as exc:
        raise _unauthorized(str(exc)) from exc


def get_gateway() -> PaymentGateway:
    return StripeGateway.from_settings(get_settings())
