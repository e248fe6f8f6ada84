import pytest

from conftest import PASSWORD, TENANT, UNIT
from tenantgate.service.errors import (
    AccountLockedError,
    ConflictError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    NotFoundError,
    UserNotActiveError,
    ValidationError,
    WeakPasswordError,
)

EMAIL = "resident@example.com"


async def _fail(credentials, times: int, email: str = EMAIL) -> None:
    for _ in range(times):
        with pytest.raises(InvalidCredentialsError):
            await credentials.verify(email, "Wrong-pass1", TENANT)


class TestVerify:
    async def test_valid_password(self, credentials, resident, memory_store, clock):
        user = await credentials.verify(EMAIL, PASSWORD, TENANT, ip_addr="10.0.0.1")
        assert user.id == resident.id
        assert user.last_login_at == clock()
        assert user.last_login_ip == "10.0.0.1"
        attempts = memory_store.list_login_attempts(EMAIL)
        assert attempts[0].success is True

    async def test_email_is_case_insensitive(self, credentials, resident):
        user = await credentials.verify("  Resident@Example.COM ", PASSWORD, TENANT)
        assert user.id == resident.id

    async def test_wrong_password_and_unknown_user_fail_alike(self, credentials, resident):
        with pytest.raises(InvalidCredentialsError) as wrong:
            await credentials.verify(EMAIL, "Wrong-pass1", TENANT)
        with pytest.raises(InvalidCredentialsError) as unknown:
            await credentials.verify("nobody@example.com", PASSWORD, TENANT)
        assert wrong.value.message == unknown.value.message
        assert wrong.value.error_code == unknown.value.error_code == "INVALID_CREDENTIALS"

    async def test_tenant_isolation(self, credentials, resident):
        with pytest.raises(InvalidCredentialsError):
            await credentials.verify(EMAIL, PASSWORD, "tenant-b")

    async def test_unknown_user_attempt_is_recorded(self, credentials, memory_store):
        with pytest.raises(InvalidCredentialsError):
            await credentials.verify("nobody@example.com", PASSWORD, TENANT)
        (attempt,) = memory_store.list_login_attempts("nobody@example.com")
        assert attempt.success is False
        assert attempt.error_reason == "unknown_user"
        assert attempt.user_id is None

    async def test_failed_attempts_increment_counter(self, credentials, resident, memory_store):
        await _fail(credentials, 2)
        assert memory_store.get_user(resident.id).failed_logins == 2

    async def test_success_resets_counter(self, credentials, resident, memory_store):
        await _fail(credentials, 3)
        await credentials.verify(EMAIL, PASSWORD, TENANT)
        assert memory_store.get_user(resident.id).failed_logins == 0
        # The rolling window was cleared, so these count from zero
        await _fail(credentials, 4)

    async def test_inactive_user_rejected_after_password_check(self, credentials, resident):
        await credentials.update_status(resident.id, "suspended")
        with pytest.raises(UserNotActiveError):
            await credentials.verify(EMAIL, PASSWORD, TENANT)
        with pytest.raises(InvalidCredentialsError):
            await credentials.verify(EMAIL, "Wrong-pass1", TENANT)


class TestLockout:
    async def test_locks_after_five_failures(self, credentials, resident, memory_store, clock):
        await _fail(credentials, 5)
        user = memory_store.get_user(resident.id)
        assert user.status == "locked"
        assert user.failed_logins == 5
        assert user.is_locked(clock())

        with pytest.raises(AccountLockedError) as exc_info:
            await credentials.verify(EMAIL, PASSWORD, TENANT)
        assert exc_info.value.retry_after == 30 * 60
        assert exc_info.value.status_code == 429

    async def test_correct_password_rejected_while_locked(self, credentials, resident, clock):
        await _fail(credentials, 5)
        clock.advance(minutes=29)
        with pytest.raises(AccountLockedError):
            await credentials.verify(EMAIL, PASSWORD, TENANT)

    async def test_lock_expires_after_thirty_minutes(self, credentials, resident, memory_store, clock):
        await _fail(credentials, 5)
        with pytest.raises(AccountLockedError):
            await credentials.verify(EMAIL, PASSWORD, TENANT)
        clock.advance(minutes=30)
        user = await credentials.verify(EMAIL, PASSWORD, TENANT)
        assert user.status == "active"
        assert user.failed_logins == 0
        assert memory_store.get_user(resident.id).locked_until is None

    async def test_attempt_during_lock_does_not_extend_it(self, credentials, resident, clock):
        await _fail(credentials, 5)
        clock.advance(minutes=10)
        with pytest.raises(AccountLockedError) as exc_info:
            await credentials.verify(EMAIL, PASSWORD, TENANT)
        assert exc_info.value.retry_after == 20 * 60
        clock.advance(minutes=20, seconds=1)
        user = await credentials.verify(EMAIL, PASSWORD, TENANT)
        assert user.status == "active"
        assert user.failed_logins == 0

    async def test_counting_restarts_after_elapsed_lock(self, credentials, resident, memory_store, clock):
        await _fail(credentials, 5)
        clock.advance(minutes=31)
        await _fail(credentials, 1)
        user = memory_store.get_user(resident.id)
        assert user.status == "active"
        assert user.failed_logins == 1

    async def test_window_slides(self, credentials, resident, memory_store, clock):
        await _fail(credentials, 4)
        clock.advance(minutes=16)
        # Earlier failures left the rolling window but the row counter keeps them
        await _fail(credentials, 1)
        assert memory_store.get_user(resident.id).status == "locked"

    async def test_unknown_identifier_is_throttled(self, credentials):
        await _fail(credentials, 5, email="ghost@example.com")
        with pytest.raises(AccountLockedError):
            await credentials.verify("ghost@example.com", PASSWORD, TENANT)

    async def test_administrative_lock_has_no_expiry(self, credentials, resident, clock):
        await credentials.update_status(resident.id, "locked")
        clock.advance(days=30)
        with pytest.raises(AccountLockedError) as exc_info:
            await credentials.verify(EMAIL, PASSWORD, TENANT)
        assert exc_info.value.retry_after == 0

    async def test_unlock_clears_counters(self, credentials, resident, memory_store):
        await _fail(credentials, 5)
        await credentials.update_status(resident.id, "active")
        user = await credentials.verify(EMAIL, PASSWORD, TENANT)
        assert user.status == "active"
        assert memory_store.get_user(resident.id).failed_logins == 0


class TestRegistration:
    def test_register_normalises_identifiers(self, credentials):
        user = credentials.register(
            " New.Resident@Example.com ",
            PASSWORD,
            tenant_id=TENANT,
            unit_id=UNIT,
            phone="+52 (155) 1234-0000",
        )
        assert user.email == "new.resident@example.com"
        assert user.phone == "+5215512340000"
        assert user.password_hash and user.password_hash.startswith("$argon2id$")
        assert user.password_hash != PASSWORD

    def test_duplicate_email_within_tenant(self, credentials, resident):
        with pytest.raises(EmailAlreadyExistsError):
            credentials.register(EMAIL, PASSWORD, tenant_id=TENANT)

    def test_same_email_in_another_tenant(self, credentials, resident):
        other = credentials.register(EMAIL, PASSWORD, tenant_id="tenant-b")
        assert other.id != resident.id

    def test_duplicate_phone(self, credentials, resident):
        with pytest.raises(ConflictError) as exc_info:
            credentials.register(
                "other@example.com", PASSWORD, tenant_id="tenant-b", phone=resident.phone
            )
        assert exc_info.value.detail == {"field": "phone"}
        assert not isinstance(exc_info.value, EmailAlreadyExistsError)

    def test_weak_password(self, credentials):
        with pytest.raises(WeakPasswordError):
            credentials.register("weak@example.com", "password", tenant_id=TENANT)

    @pytest.mark.parametrize(
        "email,phone",
        [("not-an-email", None), ("ok@example.com", "5512345678")],
    )
    def test_invalid_identifiers(self, credentials, email, phone):
        with pytest.raises(ValidationError):
            credentials.register(email, PASSWORD, tenant_id=TENANT, phone=phone)

    def test_unknown_status(self, credentials):
        with pytest.raises(ValidationError):
            credentials.register("x@example.com", PASSWORD, tenant_id=TENANT, status="deleted")


class TestAdministration:
    async def test_set_password(self, credentials, resident):
        credentials.set_password(resident.id, "Newpass9$")
        with pytest.raises(InvalidCredentialsError):
            await credentials.verify(EMAIL, PASSWORD, TENANT)
        assert (await credentials.verify(EMAIL, "Newpass9$", TENANT)).id == resident.id

    def test_set_password_enforces_policy(self, credentials, resident):
        with pytest.raises(WeakPasswordError):
            credentials.set_password(resident.id, "short")

    def test_get_unknown_user(self, credentials):
        with pytest.raises(NotFoundError):
            credentials.get_user("missing")

    async def test_update_status_unknown_user(self, credentials):
        with pytest.raises(NotFoundError):
            await credentials.update_status("missing", "active")


class TestPhoneAdmission:
    def test_admits_active_user(self, credentials, resident, memory_store):
        user = credentials.admit_by_phone(resident.phone, ip_addr="10.0.0.9")
        assert user.id == resident.id
        (attempt,) = memory_store.list_login_attempts(resident.phone)
        assert attempt.identifier_type == "phone"
        assert attempt.attempt_type == "otp"
        assert attempt.success is True

    def test_unknown_phone(self, credentials):
        with pytest.raises(InvalidCredentialsError):
            credentials.admit_by_phone("+5215500000000")

    async def test_suspended_user(self, credentials, resident):
        await credentials.update_status(resident.id, "suspended")
        with pytest.raises(UserNotActiveError):
            credentials.admit_by_phone(resident.phone)

    async def test_locked_user(self, credentials, resident):
        await _fail(credentials, 5)
        with pytest.raises(AccountLockedError):
            credentials.admit_by_phone(resident.phone)
