from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tenantgate.logging import get_correlation_id
from tenantgate.service.identifiers import normalize_email, normalize_phone

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "WEAK_PASSWORD",
    "INVALID_CREDENTIALS",
    "OTP_INVALID",
    "OTP_EXPIRED",
    "OTP_ALREADY_USED",
    "OTP_MAX_ATTEMPTS",
    "TOKEN_INVALID",
    "TOKEN_MALFORMED",
    "TOKEN_EXPIRED",
    "TOKEN_REVOKED",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "USER_NOT_ACTIVE",
    "NOT_FOUND",
    "CONFLICT",
    "EMAIL_ALREADY_EXISTS",
    "RATE_LIMITED",
    "TOO_MANY_ATTEMPTS",
    "ACCOUNT_LOCKED",
    "INTERNAL_SERVER_ERROR",
    "SERVICE_UNAVAILABLE",
    "HSM_FAILED",
    "NOTIFIER_FAILED",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=256)
    tenant_id: str = Field(..., min_length=1, max_length=128)
    unit_id: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return normalize_phone(value) if value else None


class PasswordLoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    tenant_id: str = Field(..., min_length=1, max_length=128)
    unit_id: Optional[str] = Field(default=None, max_length=128)


class SendOTPRequest(BaseModel):
    phone: str

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        return normalize_phone(value)


class OTPLoginRequest(BaseModel):
    phone: str
    code: str = Field(..., min_length=4, max_length=8, pattern=r"^\d+$")

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        return normalize_phone(value)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=8192)


class RevokeRequest(BaseModel):
    jti: str = Field(..., min_length=1, max_length=128)
    reason: str = Field(default="revoked", max_length=64)


class RevokeAllRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    reason: str = Field(default="revoke_all", max_length=64)


class UserResponse(BaseModel):
    id: str
    email: str
    tenant_id: str
    unit_id: Optional[str] = None
    phone: Optional[str] = None
    status: str


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    user_id: str
    tenant_id: str
    unit_id: Optional[str] = None


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class ClaimsResponse(BaseModel):
    sub: str
    tenant_id: str
    unit_id: Optional[str] = None
    jti: str
    iat: int
    exp: int
    iss: str
    aud: str
