"""Single-winner guarantees when callers race on the same record."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import PASSWORD, TENANT
from tenantgate.service.auth import AuthOrchestrator
from tenantgate.service.errors import OTPAlreadyUsedError, TokenRevokedError
from tenantgate.service.rate_limit import RateLimitPolicy
from tenantgate.storage.models import OTPChallenge, RefreshTokenRecord

PHONE = "+5215512345678"
WORKERS = 8


def _race(fn, *args, **kwargs) -> list:
    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        futures = [pool.submit(fn, *args, **kwargs) for _ in range(WORKERS)]
        return [future.result() for future in futures]


class TestMemoryStore:
    def test_otp_challenge_is_consumed_once(self, memory_store, clock):
        challenge = memory_store.create_otp_challenge(
            OTPChallenge(phone=PHONE, code_hash="salt$hash", expires_at=clock() + timedelta(minutes=5))
        )
        results = _race(memory_store.consume_otp_challenge, challenge.id, now=clock())
        assert results.count(True) == 1

    def test_refresh_token_is_revoked_once(self, memory_store, clock):
        memory_store.create_refresh_token(
            RefreshTokenRecord(
                jti="jti-1",
                user_id="user-1",
                token_fingerprint="fp",
                expires_at=clock() + timedelta(days=7),
            )
        )
        results = _race(memory_store.revoke_refresh_token, "jti-1", "logout", now=clock())
        assert results.count(True) == 1
        assert memory_store.get_refresh_token("jti-1").revoked_reason == "logout"


class TestLimiter:
    def test_threshold_holds_across_threads(self, limiter):
        policy = RateLimitPolicy(name="login", threshold=5, window_seconds=900, block_seconds=1800)

        def attempt():
            return asyncio.run(limiter.check_and_increment("a@example.com", policy)).allowed

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(lambda _: attempt(), range(20)))
        assert results.count(True) == 5


class TestServices:
    async def test_same_code_verified_twice_at_once(self, otp_manager, notifier):
        await otp_manager.issue(PHONE)
        code = notifier.last_code()
        results = await asyncio.gather(
            otp_manager.verify(PHONE, code),
            otp_manager.verify(PHONE, code),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], OTPAlreadyUsedError)

    async def test_rotating_refresh_has_one_winner(self, orchestrator, resident, ledger):
        rotating = AuthOrchestrator(
            credentials=orchestrator.credentials,
            otp=orchestrator.otp,
            tokens=orchestrator.tokens,
            ledger=orchestrator.ledger,
            keys=orchestrator.keys,
            settings=orchestrator.settings.model_copy(update={"refresh_token_rotation": True}),
            clock=orchestrator._clock,
        )
        login = await rotating.login_with_password(resident.email, PASSWORD, TENANT)
        results = await asyncio.gather(
            *(rotating.refresh(login.refresh_token) for _ in range(4)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, TokenRevokedError) for r in results if r not in winners)

        old_jti = rotating.tokens.validate(login.refresh_token, token_type="refresh").jti
        assert ledger.get(old_jti).revoked_reason == "rotated"
        with pytest.raises(TokenRevokedError):
            await rotating.refresh(login.refresh_token)
        await rotating.refresh(winners[0].refresh_token)
