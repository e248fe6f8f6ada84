"""End-to-end login, refresh and revocation flows against in-memory backends."""

import asyncio
import time

import pytest

from conftest import PASSWORD, TENANT, UNIT
from tenantgate.service.auth import AuthOrchestrator
from tenantgate.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    OTPAlreadyUsedError,
    ServerError,
    ServiceUnavailableError,
    TokenExpiredError,
    TokenInvalidError,
    TokenMalformedError,
    TokenRevokedError,
    UserNotActiveError,
    WeakPasswordError,
)
from tenantgate.storage.errors import BackendUnavailable

EMAIL = "resident@example.com"
PHONE = "+5215512345678"


def _with_settings(orchestrator: AuthOrchestrator, **overrides) -> AuthOrchestrator:
    return AuthOrchestrator(
        credentials=orchestrator.credentials,
        otp=orchestrator.otp,
        tokens=orchestrator.tokens,
        ledger=orchestrator.ledger,
        keys=orchestrator.keys,
        settings=orchestrator.settings.model_copy(update=overrides),
        clock=orchestrator._clock,
    )


class TestPasswordLogin:
    async def test_login_issues_token_pair(self, orchestrator, resident, ledger, settings):
        result = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT, UNIT, ip_addr="10.1.1.1")
        assert result.user_id == resident.id
        assert result.tenant_id == TENANT
        assert result.unit_id == UNIT
        assert result.token_type == "Bearer"
        assert result.expires_in == settings.access_token_ttl_seconds

        claims = await orchestrator.authenticate(result.access_token)
        assert claims.sub == resident.id
        assert claims.tenant_id == TENANT
        assert claims.unit_id == UNIT

        refresh_claims = orchestrator.tokens.validate(result.refresh_token, token_type="refresh")
        record = ledger.get(refresh_claims.jti)
        assert record.user_id == resident.id
        assert record.device_info == {"login_method": "password"}
        assert record.ip_addr == "10.1.1.1"
        assert ledger.matches(record, result.refresh_token)

    async def test_unit_is_optional(self, orchestrator, resident):
        result = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        assert result.unit_id == UNIT

    async def test_unit_mismatch(self, orchestrator, resident):
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT, "unit-999")

    async def test_lockout_surfaces_as_429(self, orchestrator, resident):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.login_with_password(EMAIL, "Wrong-pass1", TENANT)
        with pytest.raises(AccountLockedError) as exc_info:
            await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after > 0

    async def test_access_token_expires(self, orchestrator, resident, clock, settings):
        result = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        clock.advance(seconds=settings.access_token_ttl_seconds)
        with pytest.raises(TokenExpiredError):
            await orchestrator.authenticate(result.access_token)

    async def test_refresh_token_is_not_an_access_token(self, orchestrator, resident):
        result = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        with pytest.raises(TokenInvalidError):
            await orchestrator.authenticate(result.refresh_token)


class TestOTPLogin:
    async def test_otp_login(self, orchestrator, resident, notifier, ledger):
        await orchestrator.send_otp(PHONE)
        result = await orchestrator.login_with_otp(PHONE, notifier.last_code())
        assert result.user_id == resident.id
        refresh_claims = orchestrator.tokens.validate(result.refresh_token, token_type="refresh")
        assert ledger.get(refresh_claims.jti).device_info == {"login_method": "otp"}

    async def test_code_cannot_be_replayed(self, orchestrator, resident, notifier):
        await orchestrator.send_otp(PHONE)
        code = notifier.last_code()
        await orchestrator.login_with_otp(PHONE, code)
        with pytest.raises(OTPAlreadyUsedError):
            await orchestrator.login_with_otp(PHONE, code)

    async def test_unknown_phone_still_receives_code(self, orchestrator, notifier):
        await orchestrator.send_otp("+5215599999999")
        assert notifier.sent[-1][0] == "+5215599999999"
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login_with_otp("+5215599999999", notifier.last_code())

    async def test_suspended_user_cannot_use_otp(self, orchestrator, resident, notifier):
        await orchestrator.update_user_status(resident.id, "suspended")
        await orchestrator.send_otp(PHONE)
        with pytest.raises(UserNotActiveError):
            await orchestrator.login_with_otp(PHONE, notifier.last_code())


class TestRefresh:
    async def test_refresh_issues_new_access_token(self, orchestrator, resident, clock):
        login = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        clock.advance(seconds=30)
        result = await orchestrator.refresh(login.refresh_token)
        assert result.access_token != login.access_token
        assert result.refresh_token == login.refresh_token
        claims = await orchestrator.authenticate(result.access_token)
        assert claims.sub == resident.id

    async def test_refresh_after_ledger_expiry(self, orchestrator, resident, clock, settings):
        login = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        clock.advance(seconds=settings.refresh_token_ttl_seconds)
        with pytest.raises(TokenExpiredError):
            await orchestrator.refresh(login.refresh_token)

    async def test_refresh_with_access_token(self, orchestrator, resident):
        login = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        with pytest.raises(TokenInvalidError):
            await orchestrator.refresh(login.access_token)

    async def test_refresh_with_garbage(self, orchestrator):
        with pytest.raises(TokenMalformedError):
            await orchestrator.refresh("not-a-token")

    async def test_unrecorded_refresh_token(self, orchestrator, resident):
        stray = orchestrator.tokens.mint_refresh()
        with pytest.raises(TokenInvalidError):
            await orchestrator.refresh(stray.token)

    async def test_logout_revokes(self, orchestrator, resident, ledger):
        login = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        await orchestrator.logout(login.refresh_token)
        with pytest.raises(TokenRevokedError):
            await orchestrator.refresh(login.refresh_token)
        jti = orchestrator.tokens.validate(login.refresh_token, token_type="refresh").jti
        assert ledger.get(jti).revoked_reason == "logout"

    async def test_logout_unknown_token(self, orchestrator):
        stray = orchestrator.tokens.mint_refresh()
        with pytest.raises(TokenInvalidError):
            await orchestrator.logout(stray.token)

    async def test_rotation(self, orchestrator, resident, ledger):
        rotating = _with_settings(orchestrator, refresh_token_rotation=True)
        login = await rotating.login_with_password(EMAIL, PASSWORD, TENANT)
        result = await rotating.refresh(login.refresh_token, user_agent="app/2.0")
        assert result.refresh_token != login.refresh_token

        old_jti = rotating.tokens.validate(login.refresh_token, token_type="refresh").jti
        assert ledger.get(old_jti).revoked_reason == "rotated"
        with pytest.raises(TokenRevokedError):
            await rotating.refresh(login.refresh_token)

        new_record = ledger.get(rotating.tokens.validate(result.refresh_token, token_type="refresh").jti)
        assert new_record.device_info == {"login_method": "password"}
        assert new_record.user_agent == "app/2.0"
        await rotating.refresh(result.refresh_token)

    async def test_locked_user_cannot_refresh(self, orchestrator, resident, memory_store):
        login = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        memory_store.update_user_status(resident.id, "locked")
        with pytest.raises(UserNotActiveError):
            await orchestrator.refresh(login.refresh_token)

    async def test_refresh_survives_key_rotation(self, orchestrator, resident):
        login = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        new_key = await orchestrator.rotate_signing_key()
        result = await orchestrator.refresh(login.refresh_token)
        assert (await orchestrator.authenticate(login.access_token)).sub == resident.id
        assert (await orchestrator.authenticate(result.access_token)).kid == new_key.kid


class TestRevocation:
    async def test_revoke_single(self, orchestrator, resident):
        login = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        jti = orchestrator.tokens.validate(login.refresh_token, token_type="refresh").jti
        assert await orchestrator.revoke(jti) is True
        assert await orchestrator.revoke(jti) is False
        with pytest.raises(TokenRevokedError):
            await orchestrator.refresh(login.refresh_token)

    async def test_revoke_all(self, orchestrator, resident):
        first = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        second = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        assert await orchestrator.revoke_all(resident.id) == 2
        for login in (first, second):
            with pytest.raises(TokenRevokedError):
                await orchestrator.refresh(login.refresh_token)

    async def test_reset_password_revokes_sessions(self, orchestrator, resident, ledger):
        login = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        assert await orchestrator.reset_password(resident.id, "Brandnew7&") == 1
        jti = orchestrator.tokens.validate(login.refresh_token, token_type="refresh").jti
        assert ledger.get(jti).revoked_reason == "password_reset"
        await orchestrator.login_with_password(EMAIL, "Brandnew7&", TENANT)

    async def test_reset_password_policy(self, orchestrator, resident):
        with pytest.raises(WeakPasswordError):
            await orchestrator.reset_password(resident.id, "weak")

    async def test_suspension_revokes_sessions(self, orchestrator, resident, ledger):
        login = await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        await orchestrator.update_user_status(resident.id, "suspended")
        jti = orchestrator.tokens.validate(login.refresh_token, token_type="refresh").jti
        assert ledger.get(jti).revoked_reason == "user_suspended"
        with pytest.raises(UserNotActiveError):
            await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)


class TestFailureMapping:
    async def test_timeout_becomes_service_unavailable(self, orchestrator, resident, monkeypatch):
        async def slow_verify(*args, **kwargs):
            await asyncio.sleep(1)

        guarded = _with_settings(orchestrator, request_timeout_seconds=0.05)
        monkeypatch.setattr(guarded.credentials, "verify", slow_verify)
        with pytest.raises(ServiceUnavailableError):
            await guarded.login_with_password(EMAIL, PASSWORD, TENANT)

    async def test_blocking_store_call_is_cut_off_at_the_deadline(self, orchestrator, resident, memory_store, monkeypatch):
        lookup = memory_store.get_user_by_email

        def stalled(*args, **kwargs):
            time.sleep(0.5)
            return lookup(*args, **kwargs)

        guarded = _with_settings(orchestrator, request_timeout_seconds=0.05)
        monkeypatch.setattr(memory_store, "get_user_by_email", stalled)
        started = time.monotonic()
        with pytest.raises(ServiceUnavailableError):
            await guarded.login_with_password(EMAIL, PASSWORD, TENANT)
        assert time.monotonic() - started < 0.4

    async def test_backend_outage_becomes_service_unavailable(self, orchestrator, memory_store, monkeypatch):
        def unavailable(*args, **kwargs):
            raise BackendUnavailable("postgres", "timeout")

        monkeypatch.setattr(memory_store, "get_user_by_email", unavailable)
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        assert exc_info.value.status_code == 503

    async def test_unexpected_error_becomes_server_error(self, orchestrator, memory_store, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(memory_store, "get_user_by_email", broken)
        with pytest.raises(ServerError) as exc_info:
            await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        assert exc_info.value.message == "internal server error"


class TestDiscoveryAndMaintenance:
    def test_openid_configuration(self, orchestrator, settings):
        config = orchestrator.openid_configuration("https://auth.example.com/")
        assert config["issuer"] == settings.jwt_issuer
        assert config["jwks_uri"] == "https://auth.example.com/.well-known/jwks.json"
        assert config["id_token_signing_alg_values_supported"] == ["RS256"]

    async def test_jwks_lists_retained_keys(self, orchestrator):
        first = orchestrator.keys.current_key().kid
        second = (await orchestrator.rotate_signing_key()).kid
        assert {key["kid"] for key in orchestrator.jwks()["keys"]} == {first, second}

    async def test_cleanup(self, orchestrator, resident, notifier, clock, settings):
        await orchestrator.login_with_password(EMAIL, PASSWORD, TENANT)
        await orchestrator.send_otp(PHONE)
        clock.advance(seconds=settings.refresh_token_ttl_seconds)
        report = await orchestrator.cleanup()
        assert report.refresh_tokens == 1
        assert report.otp_challenges == 1
