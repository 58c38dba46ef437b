from __future__ import annotations


class PushRelayError(Exception):
    """Base error for pushrelay."""

    code = "INTERNAL_ERROR"


class ValidationError(PushRelayError):
    """Malformed caller input; not retryable as-is."""

    code = "VALIDATION_ERROR"


class InvalidKeyMaterialError(ValidationError):
    """Subscription key material failed decoding or length checks."""

    def __init__(self, field: str, decoded_length: int | None, message: str | None = None) -> None:
        self.field = field
        self.decoded_length = decoded_length
        if message is None:
            if decoded_length is None:
                message = f"{field} is not valid base64/base64url"
            else:
                message = f"{field} has invalid decoded length {decoded_length}"
        super().__init__(message)


class NotFoundError(PushRelayError):
    """Referenced tenant or subscription does not exist."""

    code = "NOT_FOUND"


class AccessDeniedError(PushRelayError):
    """Resource exists but belongs to a different tenant."""

    code = "ACCESS_DENIED"


class RateLimitExceededError(PushRelayError):
    """Rate limit gate tripped; callers should back off."""

    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, *, action: str, current: int, limit: int) -> None:
        super().__init__(message)
        self.action = action
        self.current = current
        self.limit = limit


class SubscriptionLimitExceededError(RateLimitExceededError):
    """Tenant reached its subscription ceiling."""


class DeliveryFailure(PushRelayError):
    """Per-subscription delivery failure reported by a transport."""

    code = "DELIVERY_FAILED"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryFailure(DeliveryFailure):
    """Possibly-recoverable delivery failure; the subscription is kept."""


class PermanentDeliveryFailure(DeliveryFailure):
    """Endpoint is gone; the subscription should be pruned."""


class InternalError(PushRelayError):
    """Backing store failure surfaced without storage details."""

    code = "INTERNAL_ERROR"


class DatabaseError(InternalError):
    """Database layer failure."""
