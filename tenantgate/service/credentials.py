from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import (
    AccountLockedError,
    ConflictError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    NotFoundError,
    UserNotActiveError,
    ValidationError,
)
from tenantgate.service.identifiers import normalize_email, normalize_phone
from tenantgate.service.password_policy import validate_password
from tenantgate.service.rate_limit import RateLimiter, RateLimitPolicy
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import USER_STATUSES, Clock, LoginAttempt, User, utcnow

logger = get_logger(__name__)

INACTIVE_STATUSES = ("inactive", "suspended")


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        unit_id: Optional[str] = None,
        phone: Optional[str] = None,
        password_hash: Optional[str] = None,
        status: str = "active",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def set_password_hash(
        self, user_id: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def update_user_status(
        self, user_id: str, status: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def record_failed_login(
        self,
        user_id: str,
        attempt: LoginAttempt,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[User]: ...

    def record_successful_login(
        self, user_id: str, attempt: LoginAttempt, *, now: datetime
    ) -> Optional[User]: ...

    def append_login_attempt(self, attempt: LoginAttempt) -> None: ...


class CredentialStore:
    """Password verification with lockout, plus account administration.

    Unknown accounts and wrong passwords fail identically, and a dummy
    argon2 verification keeps the two paths close in timing. Lockout state
    lives on the user row; the rate limiter only adds the rolling
    per-identifier window in front of it.
    """

    def __init__(
        self,
        store: UserStore,
        limiter: RateLimiter,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.settings = settings
        self.login_policy = RateLimitPolicy.login(settings)
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (VerifyMismatchError, InvalidHashError, VerificationError):
            return False

    def _dummy_verify(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("dummy-password-for-timing")
        self._check_password(self._dummy_hash, password)

    def _attempt(
        self,
        identifier: str,
        tenant_id: Optional[str],
        *,
        success: bool,
        identifier_type: str = "email",
        attempt_type: str = "password",
        error_reason: Optional[str] = None,
        user_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginAttempt:
        return LoginAttempt(
            identifier=identifier,
            identifier_type=identifier_type,
            attempt_type=attempt_type,
            success=success,
            error_reason=error_reason,
            ip_addr=ip_addr,
            user_agent=user_agent,
            tenant_id=tenant_id,
            user_id=user_id,
            created_at=self._clock(),
        )

    async def verify(
        self,
        email: str,
        password: str,
        tenant_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        identifier = email.strip().lower()
        decision = await self.limiter.check_and_increment(
            identifier, self.login_policy, tenant_id=tenant_id
        )
        if decision.blocked:
            await asyncio.to_thread(
                self.store.append_login_attempt,
                self._attempt(
                    identifier,
                    tenant_id,
                    success=False,
                    error_reason="rate_limited",
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                ),
            )
            raise AccountLockedError(retry_after=decision.retry_after)

        user = await asyncio.to_thread(
            self._check_credentials,
            identifier,
            password,
            tenant_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        await self.limiter.reset(identifier, self.login_policy, tenant_id=tenant_id)
        return user

    def _check_credentials(
        self,
        identifier: str,
        password: str,
        tenant_id: str,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> User:
        """Hash comparison and account-state checks; blocking, so callers run it in a thread."""
        now = self._clock()
        user = self.store.get_user_by_email(identifier, tenant_id)
        if not user:
            self._dummy_verify(password)
            self.store.append_login_attempt(
                self._attempt(
                    identifier,
                    tenant_id,
                    success=False,
                    error_reason="unknown_user",
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                )
            )
            logger.info("login_failed", tenant_id=tenant_id, reason="unknown_user")
            raise InvalidCredentialsError()

        if user.is_locked(now):
            self.store.append_login_attempt(
                self._attempt(
                    identifier,
                    tenant_id,
                    success=False,
                    error_reason="account_locked",
                    user_id=user.id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                )
            )
            retry_after = 0
            if user.locked_until is not None:
                retry_after = max(1, math.ceil((user.locked_until - now).total_seconds()))
            logger.warning("login_rejected_locked", user_id=user.id, retry_after=retry_after)
            raise AccountLockedError(retry_after=retry_after)

        if not user.password_hash or not self._check_password(user.password_hash, password):
            updated = self.store.record_failed_login(
                user.id,
                self._attempt(
                    identifier,
                    tenant_id,
                    success=False,
                    error_reason="invalid_password",
                    user_id=user.id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                ),
                threshold=self.settings.login_max_attempts,
                lock_until=now + timedelta(minutes=self.settings.account_lock_minutes),
                now=now,
            )
            if updated and updated.status == "locked":
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    failed_logins=updated.failed_logins,
                    locked_until=updated.locked_until.isoformat() if updated.locked_until else None,
                )
            else:
                logger.info("login_failed", user_id=user.id, reason="invalid_password")
            raise InvalidCredentialsError()

        if user.status in INACTIVE_STATUSES:
            self.store.append_login_attempt(
                self._attempt(
                    identifier,
                    tenant_id,
                    success=False,
                    error_reason="user_not_active",
                    user_id=user.id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                )
            )
            logger.info("login_failed", user_id=user.id, reason="user_not_active")
            raise UserNotActiveError()

        updated = self.store.record_successful_login(
            user.id,
            self._attempt(
                identifier,
                tenant_id,
                success=True,
                user_id=user.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            ),
            now=now,
        )
        return updated or user

    def register(
        self,
        email: str,
        password: str,
        *,
        tenant_id: str,
        unit_id: Optional[str] = None,
        phone: Optional[str] = None,
        status: str = "active",
    ) -> User:
        try:
            normalized_email = normalize_email(email)
            normalized_phone = normalize_phone(phone) if phone else None
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if status not in USER_STATUSES:
            raise ValidationError(f"unknown user status {status}")
        validate_password(password)
        try:
            user = self.store.create_user(
                normalized_email,
                tenant_id=tenant_id,
                unit_id=unit_id,
                phone=normalized_phone,
                password_hash=self.hash_password(password),
                status=status,
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "phone":
                raise ConflictError("phone already registered", detail={"field": "phone"}) from exc
            raise EmailAlreadyExistsError("email already registered", detail={"field": "email"}) from exc
        logger.info("user_registered", user_id=user.id, tenant_id=tenant_id, unit_id=unit_id)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def set_password(self, user_id: str, new_password: str) -> User:
        validate_password(new_password)
        user = self.store.set_password_hash(
            user_id, self.hash_password(new_password), now=self._clock()
        )
        if not user:
            raise NotFoundError("user not found")
        logger.info("password_changed", user_id=user_id)
        return user

    async def update_status(self, user_id: str, status: str) -> User:
        """Administrative status change; moving away from ``locked`` clears counters."""
        if status not in USER_STATUSES:
            raise ValidationError(f"unknown user status {status}")
        user = await asyncio.to_thread(self.store.update_user_status, user_id, status, now=self._clock())
        if not user:
            raise NotFoundError("user not found")
        if status == "active":
            await self.limiter.reset(user.email, self.login_policy, tenant_id=user.tenant_id)
        logger.info("user_status_changed", user_id=user_id, status=status)
        return user

    def admit_by_phone(
        self,
        phone: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        """Resolve and admit the account behind a phone that just passed an OTP check."""
        now = self._clock()
        user = self.store.get_user_by_phone(phone)
        attempt_kwargs = dict(
            identifier_type="phone",
            attempt_type="otp",
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        if not user:
            self.store.append_login_attempt(
                self._attempt(phone, None, success=False, error_reason="unknown_user", **attempt_kwargs)
            )
            raise InvalidCredentialsError()
        if user.is_locked(now):
            self.store.append_login_attempt(
                self._attempt(
                    phone,
                    user.tenant_id,
                    success=False,
                    error_reason="account_locked",
                    user_id=user.id,
                    **attempt_kwargs,
                )
            )
            raise AccountLockedError()
        if user.status in INACTIVE_STATUSES:
            self.store.append_login_attempt(
                self._attempt(
                    phone,
                    user.tenant_id,
                    success=False,
                    error_reason="user_not_active",
                    user_id=user.id,
                    **attempt_kwargs,
                )
            )
            raise UserNotActiveError()
        updated = self.store.record_successful_login(
            user.id,
            self._attempt(phone, user.tenant_id, success=True, user_id=user.id, **attempt_kwargs),
            now=now,
        )
        return updated or user
