from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.errors import ConflictError, NotFoundError
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import Clock, RefreshTokenRecord, utcnow

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, jti: str, reason: str, *, now: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, reason: str, *, now: datetime) -> int: ...

    def delete_expired_refresh_tokens(self, *, now: datetime) -> int: ...


class RefreshTokenLedger:
    """Bookkeeping for issued refresh tokens, keyed by jti.

    Only a keyed fingerprint of each raw token is stored, so a leaked table
    cannot be replayed. Revocation is one-way.
    """

    def __init__(self, store: RefreshTokenStore, fingerprint_key: str, *, clock: Clock = utcnow) -> None:
        self.store = store
        self._fingerprint_key = fingerprint_key.encode()
        self._clock = clock

    def fingerprint(self, token: str) -> str:
        return hmac.new(self._fingerprint_key, token.encode(), hashlib.sha256).hexdigest()

    def matches(self, record: RefreshTokenRecord, token: str) -> bool:
        return hmac.compare_digest(record.token_fingerprint, self.fingerprint(token))

    def create(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            return self.store.create_refresh_token(record)
        except ConstraintViolation as exc:
            raise ConflictError("refresh token already recorded", detail=exc.detail) from exc

    def get(self, jti: str) -> RefreshTokenRecord:
        record = self.store.get_refresh_token(jti)
        if not record:
            raise NotFoundError("refresh token not found")
        return record

    def revoke(self, jti: str, reason: str) -> bool:
        """Revoke one token.

        Returns True when this call flipped the record, False when it was
        already revoked; unknown jtis raise :class:`NotFoundError`.
        """
        if self.store.revoke_refresh_token(jti, reason, now=self._clock()):
            logger.info("refresh_token_revoked", jti=jti, reason=reason)
            return True
        if not self.store.get_refresh_token(jti):
            raise NotFoundError("refresh token not found")
        return False

    def revoke_all(self, user_id: str, reason: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, reason, now=self._clock())
        logger.info("refresh_tokens_revoked", user_id=user_id, reason=reason, count=count)
        return count

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_refresh_tokens(now=self._clock())
        if removed:
            logger.info("refresh_tokens_pruned", removed=removed)
        return removed
