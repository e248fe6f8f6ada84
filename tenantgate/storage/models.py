from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

USER_STATUSES = ("active", "inactive", "suspended", "locked")


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    tenant_id: str
    unit_id: Optional[str] = None
    phone: Optional[str] = None
    password_hash: Optional[str] = None
    status: str = "active"
    failed_logins: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        if self.status != "locked":
            return False
        # No expiry means an administrative lock
        return self.locked_until is None or self.locked_until > now

    def lock_elapsed(self, now: datetime) -> bool:
        return (
            self.status == "locked"
            and self.locked_until is not None
            and self.locked_until <= now
        )


@dataclass
class LoginAttempt:
    identifier: str
    identifier_type: str
    attempt_type: str
    success: bool
    error_reason: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OTPChallenge:
    phone: str
    code_hash: str
    expires_at: datetime
    purpose: str = "login"
    used: bool = False
    used_at: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    jti: str
    user_id: str
    token_fingerprint: str
    expires_at: datetime
    tenant_id: Optional[str] = None
    unit_id: Optional[str] = None
    revoked: bool = False
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    device_info: Dict | None = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)
