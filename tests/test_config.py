import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import ValidationError

from tenantgate.config import KeyBackendKind, Settings
from tenantgate.service.keys import RemoteHSMBackend, SoftwareKeyBackend
from tenantgate.service.runtime import _mask_url_password, build_key_backend


class TestSettings:
    def test_defaults(self):
        settings = Settings(test_mode=True)
        assert settings.login_max_attempts == 5
        assert settings.login_window_seconds == 900
        assert settings.login_block_seconds == 1800
        assert settings.account_lock_minutes == 30
        assert settings.otp_rate_limit_per_hour == 3
        assert settings.otp_max_attempts == 3
        assert settings.refresh_token_rotation is False
        assert settings.effective_key_retention_seconds == settings.refresh_token_ttl_seconds

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "600")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")
        monkeypatch.setenv("KEY_BACKEND", " Software ")
        monkeypatch.setenv("REFRESH_TOKEN_ROTATION", "true")
        settings = Settings.from_env()
        assert settings.access_token_ttl_seconds == 600
        assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
        assert settings.key_backend == KeyBackendKind.SOFTWARE
        assert settings.refresh_token_rotation is True

    def test_missing_secrets_are_generated(self):
        settings = Settings(test_mode=True)
        assert settings.refresh_fingerprint_key
        assert settings.otp_pepper
        assert Settings(test_mode=True).otp_pepper != settings.otp_pepper

    @pytest.mark.parametrize(
        "overrides",
        [
            {"access_token_ttl_seconds": 0},
            {"login_max_attempts": -1},
            {"key_size": 1024},
            {"key_backend": "hsm"},
            {"key_backend": "yubikey"},
        ],
    )
    def test_rejects_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            Settings(test_mode=True, **overrides)

    def test_otp_length_is_clamped(self):
        assert Settings(test_mode=True, otp_length=12).otp_length == 8
        assert Settings(test_mode=True, otp_length=2).otp_length == 4


class TestKeyBackendSelection:
    def test_software_backend_with_seed(self, tmp_path):
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        path = tmp_path / "signing.pem"
        path.write_bytes(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )
        backend = build_key_backend(Settings(test_mode=True, signing_key_path=str(path)))
        assert isinstance(backend, SoftwareKeyBackend)
        _, public = backend.generate_key()
        assert public.public_numbers() == key.public_key().public_numbers()

    def test_hsm_backend(self):
        backend = build_key_backend(
            Settings(test_mode=True, key_backend="hsm", hsm_url="https://hsm.internal", hsm_api_key="k")
        )
        assert isinstance(backend, RemoteHSMBackend)
        assert backend.base_url == "https://hsm.internal"
        backend.close()


def test_mask_url_password():
    assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
    assert _mask_url_password("postgresql://app:pw@db/tenantgate") == "postgresql://app:***@db/tenantgate"
    assert _mask_url_password("redis://cache:6379") == "redis://cache:6379"
