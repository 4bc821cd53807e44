from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Every error carries a stable ``error_code`` so callers outside this
    package (UI handlers, scheduled jobs) can branch without matching on
    message text:
    - validation_error
    - forbidden
    - account_inactive
    - account_locked
    - invalid_credentials
    - password_reused
    - token_issue_failed
    - storage_failure
    - audit_write_failed
    """

    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input was missing or malformed."""
    error_code = "validation_error"


class PermissionDenied(ServiceError):
    """Caller lacks the Admin role."""
    error_code = "forbidden"


class AccountInactive(ServiceError):
    error_code = "account_inactive"


class AccountLocked(ServiceError):
    """Account is inside its lockout window."""
    error_code = "account_locked"

    def __init__(self, message: str, *, minutes_remaining: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.minutes_remaining = minutes_remaining


class InvalidCredential(ServiceError):
    """Wrong password or unknown account; ``attempts_remaining`` is None for the latter."""
    error_code = "invalid_credentials"

    def __init__(
        self, message: str, *, attempts_remaining: Optional[int] = None, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.attempts_remaining = attempts_remaining


class PasswordReused(ValidationError):
    error_code = "password_reused"


class TokenIssueFailure(ServiceError):
    """Session or CSRF token could not be written to the cache."""
    error_code = "token_issue_failed"


class StorageFailure(ServiceError):
    error_code = "storage_failure"


class AuditWriteFailure(ServiceError):
    error_code = "audit_write_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PermissionDenied",
    "AccountInactive",
    "AccountLocked",
    "InvalidCredential",
    "PasswordReused",
    "TokenIssueFailure",
    "StorageFailure",
    "AuditWriteFailure",
]
