"""Unit tests for the password policy."""

import pytest

from tenantgate.service.errors import WeakPasswordError
from tenantgate.service.password_policy import password_violations, validate_password


class TestPasswordPolicy:
    """Character classes, length bounds and the weak list."""

    def test_accepts_password_with_every_class(self):
        assert validate_password("Abcdef1!") == "Abcdef1!"

    def test_rejects_missing_uppercase(self):
        with pytest.raises(WeakPasswordError) as exc_info:
            validate_password("abcdef1!")
        assert exc_info.value.error_code == "WEAK_PASSWORD"
        assert exc_info.value.status_code == 400
        assert "password must contain an uppercase letter" in exc_info.value.detail["violations"]

    def test_rejects_weak_list_entry(self):
        with pytest.raises(WeakPasswordError):
            validate_password("password")

    def test_weak_list_is_case_insensitive(self):
        assert "password is too common" in password_violations("PASSWORD")
        assert "password is too common" in password_violations("Password123")

    @pytest.mark.parametrize(
        "candidate, expected",
        [
            ("Ab1!", "password must be at least 8 characters"),
            ("ABCDEF1!", "password must contain a lowercase letter"),
            ("Abcdefg!", "password must contain a digit"),
            ("Abcdefg1", "password must contain a symbol"),
        ],
    )
    def test_reports_each_missing_rule(self, candidate, expected):
        assert expected in password_violations(candidate)

    def test_length_upper_bound(self):
        assert password_violations("Aa1!" * 32) == []
        assert "password must be at most 128 characters" in password_violations("Aa1!" * 32 + "x")

    def test_unicode_symbols_count_as_symbols(self):
        # Currency sign is category Sc, inverted question mark is Po
        assert password_violations("Abcdef1€") == []
        assert password_violations("Abcdef1¿") == []

    def test_accented_letters_satisfy_case_classes(self):
        assert password_violations("Ñandú123#") == []
