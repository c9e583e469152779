"""Domain errors raised by use cases and translated to HTTP by the routers.

Every error carries a stable ``code`` so callers can tell the kinds apart.
"""


class DomainError(Exception):
    code = "domain_error"


class NotFoundError(DomainError):
    code = "not_found"


class UnverifiedProviderError(DomainError):
    code = "unverified"


class SlotUnavailableError(DomainError):
    code = "slot_unavailable"


class SelfOverlapError(DomainError):
    code = "self_overlap"


class IllegalTransitionError(DomainError):
    code = "illegal_transition"


class DuplicatePaymentError(DomainError):
    code = "duplicate_payment"


class InvalidSignatureError(DomainError):
    code = "invalid_signature"


class GatewayError(DomainError):
    code = "gateway_error"


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer in time; the outcome is decided by a later event."""


class ForbiddenError(DomainError):
    code = "forbidden"


class InvalidRequestError(DomainError):
    code = "invalid_request"
