from dataclasses import dataclass

from ..models import UserRole


@dataclass(frozen=True)
class Caller:
    """Authenticated identity handed over by the auth layer."""

    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def is_party(self, *, buyer_id: int, provider_id: int) -> bool:
        if self.role == UserRole.BUYER:
            return self.user_id == buyer_id
        if self.role == UserRole.PROVIDER:
            return self.user_id == provider_id
        return self.is_admin
