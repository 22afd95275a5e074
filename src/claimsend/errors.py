"""Error taxonomy shared by orchestrators and the HTTP layer.

Orchestrators raise these; only ``claimsend.api.http`` turns them into
responses. Each class carries a stable ``code`` and an HTTP status.
"""

from __future__ import annotations

from typing import Any


class ClaimSendError(Exception):
    """Base class for every error surfaced to a caller."""

    code = "internal_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        http_status: int | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class ValidationError(ClaimSendError):
    code = "validation_error"
    http_status = 400


class LimitExceededError(ValidationError):
    code = "limit_exceeded"


class InvalidOtpError(ValidationError):
    code = "invalid_otp"


class AuthenticationError(ClaimSendError):
    code = "unauthorized"
    http_status = 401


class ForbiddenError(ClaimSendError):
    code = "forbidden"
    http_status = 403


class NotFoundError(ClaimSendError):
    code = "not_found"
    http_status = 404


class ConflictError(ClaimSendError):
    """Operation invalid for the current status, or a lost compare-and-swap."""

    code = "conflict"
    http_status = 409


class LockedError(ConflictError):
    code = "session_locked"
    http_status = 423


class ExpiredError(ClaimSendError):
    code = "expired"
    http_status = 410


class RateLimitedError(ClaimSendError):
    code = "rate_limited"
    http_status = 429

    def __init__(self, message: str, *, retry_after_seconds: int, **details: Any) -> None:
        super().__init__(message, retry_after_seconds=retry_after_seconds, **details)
        self.retry_after_seconds = retry_after_seconds


class UpstreamError(ClaimSendError):
    """An external collaborator rejected the operation.

    400 when the caller's input is at fault (e.g. a bad lock transaction),
    502 when the provider is.
    """

    code = "upstream_error"
    http_status = 502


class ConfigurationError(ClaimSendError):
    code = "not_configured"
    http_status = 503
