"""
Error taxonomy for the admission, token and notification subsystem.

Business-layer errors (validation, quota, token) are raised synchronously and
rendered by the API as 4xx responses. Notification-layer errors
(ChannelDeliveryError) are raised by channels but caught at the dispatcher
boundary; they never reach the caller of a business operation.

Design decisions:
- Every error carries its HTTP status and a stable machine-readable code
- `to_dict()` produces the JSON body the API returns
- Token failures share one class (AuthError) discriminated by a reason enum,
  so callers can give different guidance for expired vs. malformed tokens
"""

from enum import Enum
from typing import Any, Optional


class ServiceError(Exception):
    """Base class for all errors raised by this service."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigurationError(ServiceError):
    """Required configuration is missing or inconsistent. Fatal at startup."""

    code = "CONFIGURATION_ERROR"


class ValidationError(ServiceError):
    """Caller supplied invalid input. Never retried."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(ServiceError):
    """The caller is authenticated but may not act on this tenant."""

    status_code = 403
    code = "FORBIDDEN"


class TokenErrorReason(str, Enum):
    """Why a token was rejected."""
    MALFORMED = "malformed"
    EXPIRED = "expired"
    WRONG_KIND = "wrong_kind"


TOKEN_ERROR_MESSAGES: dict[TokenErrorReason, str] = {
    TokenErrorReason.MALFORMED: "Invalid token",
    TokenErrorReason.EXPIRED: "Token expired",
    TokenErrorReason.WRONG_KIND: "Invalid token type",
}


class AuthError(ServiceError):
    """
    A token (or caller identity) was rejected.

    The message is one of TOKEN_ERROR_MESSAGES when `reason` is set.
    """

    status_code = 401
    code = "AUTH_ERROR"

    def __init__(self, reason: Optional[TokenErrorReason] = None, message: Optional[str] = None):
        if message is None:
            message = TOKEN_ERROR_MESSAGES.get(reason, "Authentication required")
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.reason is not None:
            body["reason"] = self.reason.value
        return body


class QuotaExceeded(ServiceError):
    """
    Admission refused: the tenant used its monthly reservation allowance.

    Carries the usage figures and an upgrade hint so the client can show an
    actionable message.
    """

    status_code = 403
    code = "QUOTA_EXCEEDED"
    action = "Upgrade to the Pro plan for unlimited reservations."

    def __init__(self, current: int, limit: int, plan: str):
        super().__init__("Monthly reservation limit reached.")
        self.current = current
        self.limit = limit
        self.plan = plan

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body.update({
            "current": self.current,
            "limit": self.limit,
            "plan": self.plan,
            "action": self.action,
        })
        return body


class TooManyConnections(ServiceError):
    """The tenant already holds the maximum number of live streams."""

    status_code = 429
    code = "TOO_MANY_CONNECTIONS"


class ChannelDeliveryError(ServiceError):
    """
    An email or push delivery failed.

    Logged by the dispatcher, never surfaced to a client.

    Attributes:
        channel: Channel name ("email", "push")
        provider_status: HTTP status returned by the provider, if any
        retryable: False for terminal failures (4xx), True for 5xx/network
    """

    code = "CHANNEL_DELIVERY_ERROR"

    def __init__(
        self,
        channel: str,
        message: str,
        provider_status: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.channel = channel
        self.provider_status = provider_status
        self.retryable = retryable


class StorageError(ServiceError):
    """Persistence failed. Aborts the operation before any dispatch."""

    code = "STORAGE_ERROR"


class DuplicateKeyError(StorageError):
    """A uniqueness constraint was violated."""

    code = "DUPLICATE_KEY"
