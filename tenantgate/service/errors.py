from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on. Messages for authentication
    failures stay generic so they never reveal which factor failed; the
    ``error_code`` is what distinguishes kinds.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class WeakPasswordError(ValidationError):
    """Password does not satisfy the password policy (400)."""
    error_code = "WEAK_PASSWORD"


class AuthenticationError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "INVALID_CREDENTIALS"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account or wrong password; deliberately indistinguishable."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OTPError(AuthenticationError):
    """Base for one-time passcode failures (401)."""

    def __init__(self, message: str = "invalid or expired code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OTPInvalidError(OTPError):
    error_code = "OTP_INVALID"


class OTPExpiredError(OTPError):
    error_code = "OTP_EXPIRED"


class OTPAlreadyUsedError(OTPError):
    error_code = "OTP_ALREADY_USED"


class OTPMaxAttemptsError(OTPError):
    error_code = "OTP_MAX_ATTEMPTS"


class TokenError(AuthenticationError):
    """Base for token lifecycle failures (401).

    Subclasses let callers choose between prompting a refresh
    (:class:`TokenExpiredError`) and forcing a new login (everything else).
    """

    error_code = "TOKEN_INVALID"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(TokenError):
    error_code = "TOKEN_INVALID"


class UnknownKeyError(TokenInvalidError):
    """Token header names a kid that is not (or no longer) trusted."""


class TokenMalformedError(TokenError):
    error_code = "TOKEN_MALFORMED"

    def __init__(self, message: str = "malformed token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(TokenError):
    error_code = "TOKEN_EXPIRED"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevokedError(TokenError):
    error_code = "TOKEN_REVOKED"

    def __init__(self, message: str = "token revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class UserNotActiveError(ForbiddenError):
    """Account exists but is inactive or suspended (403)."""
    error_code = "USER_NOT_ACTIVE"

    def __init__(self, message: str = "user not active", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class EmailAlreadyExistsError(ConflictError):
    error_code = "EMAIL_ALREADY_EXISTS"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429).

    ``retry_after`` is the number of seconds until the caller may try again.
    """
    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class TooManyAttemptsError(RateLimitedError):
    error_code = "TOO_MANY_ATTEMPTS"

    def __init__(self, message: str = "too many attempts", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(RateLimitedError):
    error_code = "ACCOUNT_LOCKED"

    def __init__(self, message: str = "account locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_SERVER_ERROR"


class ServiceUnavailableError(ServiceError):
    """A dependency (store, cache, notifier, key backend) is unreachable (503)."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"

    def __init__(self, message: str = "service unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "OTPError",
    "OTPInvalidError",
    "OTPExpiredError",
    "OTPAlreadyUsedError",
    "OTPMaxAttemptsError",
    "TokenError",
    "TokenInvalidError",
    "UnknownKeyError",
    "TokenMalformedError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ForbiddenError",
    "UserNotActiveError",
    "NotFoundError",
    "ConflictError",
    "EmailAlreadyExistsError",
    "RateLimitedError",
    "TooManyAttemptsError",
    "AccountLockedError",
    "ServerError",
    "ServiceUnavailableError",
]
