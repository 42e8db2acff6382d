from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    NOT_ENABLED = "NOT_ENABLED"
    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    CHALLENGE_NOT_FOUND = "CHALLENGE_NOT_FOUND"
    INVALID_CODE = "INVALID_CODE"
    RATE_LIMITED = "RATE_LIMITED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


class TwoFactorError(Exception):
    """Base for every error the 2FA services surface to callers.

    ``message`` is safe to show to an unauthenticated client.
    """

    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    status_code: int = 400
    default_message = "Request rejected"

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or self.default_message
        self.details = {k: v for k, v in details.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"detail": self.message, "code": self.code.value}
        for k, v in self.details.items():
            out[k] = v.isoformat() if isinstance(v, datetime) else v
        return out


class NotEnabledError(TwoFactorError):
    code = ErrorCode.NOT_ENABLED
    status_code = 400
    default_message = "Two-factor authentication is not enabled"


class ChallengeExpiredError(TwoFactorError):
    code = ErrorCode.CHALLENGE_EXPIRED
    status_code = 401
    default_message = "Challenge expired"


class ChallengeNotFoundError(TwoFactorError):
    code = ErrorCode.CHALLENGE_NOT_FOUND
    status_code = 401
    default_message = "Challenge not found"


class InvalidCodeError(TwoFactorError):
    code = ErrorCode.INVALID_CODE
    status_code = 400
    default_message = "Invalid verification code"


class RateLimitedError(TwoFactorError):
    code = ErrorCode.RATE_LIMITED
    status_code = 429
    default_message = "Too many requests"


class AccountLockedError(TwoFactorError):
    code = ErrorCode.ACCOUNT_LOCKED
    status_code = 423
    default_message = "Account temporarily locked"


class ForbiddenError(TwoFactorError):
    code = ErrorCode.FORBIDDEN
    status_code = 403
    default_message = "Forbidden"


class InvalidInputError(TwoFactorError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 400
    default_message = "Invalid input"


class NotFoundError(TwoFactorError):
    code = ErrorCode.NOT_FOUND
    status_code = 404
    default_message = "Not found"


class SmsDeliveryError(Exception):
    """The SMS provider rejected or failed to accept a message."""

    status_code = 502
