from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from argon2 import Type
from argon2.low_level import hash_secret_raw

from tenantgate.config import Settings
from tenantgate.logging import get_logger, mask_phone
from tenantgate.service.errors import (
    OTPAlreadyUsedError,
    OTPExpiredError,
    OTPInvalidError,
    OTPMaxAttemptsError,
    ServiceUnavailableError,
    TooManyAttemptsError,
    ValidationError,
)
from tenantgate.service.identifiers import normalize_phone
from tenantgate.service.keys import b64url_decode, b64url_encode
from tenantgate.service.notifier import Notifier
from tenantgate.service.rate_limit import RateLimiter, RateLimitPolicy
from tenantgate.storage.models import Clock, OTPChallenge, utcnow

logger = get_logger(__name__)

# Memory-hard parameters for the stored code hash
_ARGON2_TIME_COST = 1
_ARGON2_MEMORY_KIB = 32 * 1024
_ARGON2_PARALLELISM = 2
_ARGON2_HASH_LEN = 32
_SALT_BYTES = 16

# Challenges examined per verification; issuance is throttled to a few per
# hour, so every live code falls inside this window
_CHALLENGE_LOOKBACK = 5


class ChallengeStore(Protocol):
    def create_otp_challenge(self, challenge: OTPChallenge) -> OTPChallenge: ...

    def list_otp_challenges(self, phone: str, purpose: str, *, limit: int) -> List[OTPChallenge]: ...

    def increment_otp_attempts(self, challenge_id: str) -> Optional[int]: ...

    def consume_otp_challenge(self, challenge_id: str, *, now: datetime) -> bool: ...

    def delete_otp_challenge(self, challenge_id: str) -> None: ...

    def delete_expired_otp_challenges(self, *, now: datetime) -> int: ...


def _is_live(challenge: OTPChallenge, now: datetime) -> bool:
    return (
        not challenge.used
        and challenge.expires_at > now
        and challenge.attempts < challenge.max_attempts
    )


def _raise_for_state(challenge: OTPChallenge, now: datetime) -> None:
    if challenge.expires_at <= now:
        raise OTPExpiredError()
    if challenge.used:
        raise OTPAlreadyUsedError()
    raise OTPMaxAttemptsError()


@dataclass(frozen=True)
class OTPSubject:
    """Proof that a phone answered a challenge; the orchestrator resolves the user."""

    phone: str
    purpose: str
    challenge_id: str


class OTPManager:
    """Issues and verifies numeric one-time passcodes delivered out-of-band.

    Only a peppered, salted argon2id hash of each code is stored. Every code
    issued to a phone stays valid under its own expiry, use and attempt
    limits until it is consumed.
    """

    def __init__(
        self,
        store: ChallengeStore,
        limiter: RateLimiter,
        notifier: Notifier,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.notifier = notifier
        self.settings = settings
        self.issue_policy = RateLimitPolicy.otp_issue(settings)
        self._clock = clock

    def _normalize(self, phone: str) -> str:
        try:
            return normalize_phone(phone)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    def generate_code(self) -> str:
        length = self.settings.otp_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def _derive(self, code: str, salt: bytes) -> bytes:
        keyed = hmac.new(self.settings.otp_pepper.encode(), code.encode(), hashlib.sha256).digest()
        return hash_secret_raw(
            keyed,
            salt,
            time_cost=_ARGON2_TIME_COST,
            memory_cost=_ARGON2_MEMORY_KIB,
            parallelism=_ARGON2_PARALLELISM,
            hash_len=_ARGON2_HASH_LEN,
            type=Type.ID,
        )

    def hash_code(self, code: str) -> str:
        salt = secrets.token_bytes(_SALT_BYTES)
        return f"{b64url_encode(salt)}${b64url_encode(self._derive(code, salt))}"

    def code_matches(self, code_hash: str, code: str) -> bool:
        salt_b64, sep, digest_b64 = code_hash.partition("$")
        if not sep:
            return False
        try:
            salt = b64url_decode(salt_b64)
            expected = b64url_decode(digest_b64)
        except ValueError:
            return False
        return hmac.compare_digest(self._derive(code, salt), expected)

    async def issue(self, phone: str, *, purpose: str = "login") -> None:
        phone = self._normalize(phone)
        decision = await self.limiter.check_and_increment(phone, self.issue_policy)
        if decision.blocked:
            logger.warning("otp_issue_throttled", destination=mask_phone(phone), retry_after=decision.retry_after)
            raise TooManyAttemptsError(retry_after=decision.retry_after)

        now = self._clock()
        code = self.generate_code()
        code_hash = await asyncio.to_thread(self.hash_code, code)
        challenge = await asyncio.to_thread(
            self.store.create_otp_challenge,
            OTPChallenge(
                phone=phone,
                code_hash=code_hash,
                expires_at=now + timedelta(seconds=self.settings.otp_ttl_seconds),
                purpose=purpose,
                max_attempts=self.settings.otp_max_attempts,
                created_at=now,
            ),
        )
        delivered = await self.notifier.send_code(phone, code)
        if not delivered:
            await asyncio.to_thread(self.store.delete_otp_challenge, challenge.id)
            raise ServiceUnavailableError("could not deliver code", error_code="NOTIFIER_FAILED")
        logger.info("otp_issued", destination=mask_phone(phone), challenge_id=challenge.id, purpose=purpose)

    async def verify(self, phone: str, code: str, *, purpose: str = "login") -> OTPSubject:
        """Check ``code`` against the phone's recent challenges.

        Every live challenge (unused, unexpired, attempts left) is accepted
        on its own terms, so a newer code does not invalidate an older one.
        A code matching a dead challenge reports why it is dead; a code
        matching nothing counts as a wrong guess against every live
        challenge.
        """
        phone = self._normalize(phone)
        now = self._clock()
        challenges = await asyncio.to_thread(
            self.store.list_otp_challenges, phone, purpose, limit=_CHALLENGE_LOOKBACK
        )
        if not challenges:
            raise OTPInvalidError()
        live = [challenge for challenge in challenges if _is_live(challenge, now)]

        # Live challenges first so a code colliding with a dead one still wins
        candidates = live + [challenge for challenge in challenges if not _is_live(challenge, now)]
        matched = await asyncio.to_thread(self._find_match, candidates, code)
        if matched is None:
            if not live:
                _raise_for_state(challenges[0], now)
            for challenge in live:
                attempts = await asyncio.to_thread(self.store.increment_otp_attempts, challenge.id)
                logger.info("otp_mismatch", challenge_id=challenge.id, attempts=attempts)
            raise OTPInvalidError()
        if not _is_live(matched, now):
            _raise_for_state(matched, now)

        consumed = await asyncio.to_thread(self.store.consume_otp_challenge, matched.id, now=now)
        if not consumed:
            # Lost a race with a concurrent verification of the same code
            raise OTPAlreadyUsedError()
        logger.info("otp_verified", challenge_id=matched.id, purpose=purpose)
        return OTPSubject(phone=phone, purpose=purpose, challenge_id=matched.id)

    def _find_match(self, challenges: List[OTPChallenge], code: str) -> Optional[OTPChallenge]:
        for challenge in challenges:
            if self.code_matches(challenge.code_hash, code):
                return challenge
        return None

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_otp_challenges(now=self._clock())
        if removed:
            logger.info("otp_challenges_pruned", removed=removed)
        return removed
