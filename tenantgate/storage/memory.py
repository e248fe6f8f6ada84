from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from tenantgate.logging import get_logger
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    LoginAttempt,
    OTPChallenge,
    RefreshTokenRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    Every mutation happens under one re-entrant lock so conditional updates
    (OTP consumption, refresh revocation, lockout counters) behave like the
    row-level conditional updates of the Postgres store. Reads hand out
    copies so callers cannot mutate stored rows behind the lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.otp_challenges: Dict[str, OTPChallenge] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so compound operations can call the simple ones
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        unit_id: Optional[str] = None,
        phone: Optional[str] = None,
        password_hash: Optional[str] = None,
        status: str = "active",
    ) -> User:
        email = email.lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.tenant_id == tenant_id and existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if phone and existing.phone == phone:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                tenant_id=tenant_id,
                unit_id=unit_id,
                phone=phone,
                password_hash=password_hash,
                status=status,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        email = email.lower()
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email == email and u.tenant_id == tenant_id
                ),
                None,
            )
            return replace(user) if user else None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.phone == phone), None)
            return replace(user) if user else None

    def set_password_hash(
        self, user_id: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = now or utcnow()
            return replace(user)

    def update_user_status(
        self, user_id: str, status: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            if status != "locked":
                user.locked_until = None
                user.failed_logins = 0
            user.updated_at = now or utcnow()
            return replace(user)

    def record_failed_login(
        self,
        user_id: str,
        attempt: LoginAttempt,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[User]:
        """Increment the failure counter, lock at the threshold and append the audit row."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.lock_elapsed(now):
                user.status = "active"
                user.failed_logins = 0
                user.locked_until = None
            user.failed_logins += 1
            if user.failed_logins >= threshold:
                user.status = "locked"
                user.locked_until = lock_until
            user.updated_at = now
            self.login_attempts.append(replace(attempt))
            return replace(user)

    def record_successful_login(
        self, user_id: str, attempt: LoginAttempt, *, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.status == "locked":
                user.status = "active"
            user.failed_logins = 0
            user.locked_until = None
            user.last_login_at = now
            user.last_login_ip = attempt.ip_addr
            user.updated_at = now
            self.login_attempts.append(replace(attempt))
            return replace(user)

    def append_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(replace(attempt))

    def list_login_attempts(
        self,
        identifier: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[LoginAttempt]:
        with self._data_lock:
            rows = [
                replace(a)
                for a in self.login_attempts
                if a.identifier == identifier and (since is None or a.created_at >= since)
            ]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        return rows[:limit]

    # one-time passcodes
    def create_otp_challenge(self, challenge: OTPChallenge) -> OTPChallenge:
        with self._data_lock:
            if challenge.id in self.otp_challenges:
                raise ConstraintViolation("otp challenge exists", {"id": challenge.id})
            self.otp_challenges[challenge.id] = replace(challenge)
            return replace(challenge)

    def list_otp_challenges(self, phone: str, purpose: str, *, limit: int) -> List[OTPChallenge]:
        """Newest first; insertion order breaks created_at ties in favour of the newer row."""
        with self._data_lock:
            matching = [
                (challenge.created_at, position, challenge)
                for position, challenge in enumerate(self.otp_challenges.values())
                if challenge.phone == phone and challenge.purpose == purpose
            ]
            matching.sort(key=lambda item: (item[0], item[1]), reverse=True)
            return [replace(challenge) for _, _, challenge in matching[:limit]]

    def increment_otp_attempts(self, challenge_id: str) -> Optional[int]:
        """Count a wrong guess unless the challenge is consumed or exhausted."""
        with self._data_lock:
            challenge = self.otp_challenges.get(challenge_id)
            if (
                not challenge
                or challenge.used
                or challenge.attempts >= challenge.max_attempts
            ):
                return None
            challenge.attempts += 1
            return challenge.attempts

    def consume_otp_challenge(self, challenge_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            challenge = self.otp_challenges.get(challenge_id)
            if (
                not challenge
                or challenge.used
                or challenge.expires_at <= now
                or challenge.attempts >= challenge.max_attempts
            ):
                return False
            challenge.used = True
            challenge.used_at = now
            return True

    def delete_otp_challenge(self, challenge_id: str) -> None:
        with self._data_lock:
            self.otp_challenges.pop(challenge_id, None)

    def delete_expired_otp_challenges(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [
                cid
                for cid, c in self.otp_challenges.items()
                if c.used or c.expires_at <= now
            ]
            for cid in stale:
                self.otp_challenges.pop(cid, None)
            return len(stale)

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.jti in self.refresh_tokens:
                raise ConstraintViolation("refresh token jti exists", {"field": "jti"})
            self.refresh_tokens[record.jti] = replace(record)
            return replace(record)

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            return replace(record) if record else None

    def revoke_refresh_token(self, jti: str, reason: str, *, now: datetime) -> bool:
        """Revoke one record; returns False when it was missing or already revoked."""
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if not record or record.revoked:
                return False
            record.revoked = True
            record.revoked_reason = reason
            record.revoked_at = now
            return True

    def revoke_user_refresh_tokens(self, user_id: str, reason: str, *, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    record.revoked_reason = reason
                    record.revoked_at = now
                    revoked += 1
            return revoked

    def delete_expired_refresh_tokens(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [
                jti for jti, record in self.refresh_tokens.items() if record.expires_at <= now
            ]
            for jti in stale:
                self.refresh_tokens.pop(jti, None)
            return len(stale)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None
