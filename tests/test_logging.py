from tenantgate.logging import _redact_pii, mask_phone


class TestRedaction:
    def test_credentials_and_contacts_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login",
                "password": "Abcdef1!",
                "refresh_token": "eyJhbGciOi.payload.sig",
                "email": "resident@example.com",
                "phone": "+5215512345678",
                "code": "123",
            },
        )
        assert event["password"] == "Ab***1!"
        assert "payload" not in event["refresh_token"]
        assert event["email"] == "re***om"
        assert event["phone"] == "+5***78"
        assert event["code"] == "***"

    def test_safe_keys_pass_through(self):
        event = _redact_pii(
            None,
            "info",
            {"token_type": "refresh", "error_code": "TOKEN_EXPIRED", "jti": "abc-123", "status_code": 401},
        )
        assert event == {
            "token_type": "refresh",
            "error_code": "TOKEN_EXPIRED",
            "jti": "abc-123",
            "status_code": 401,
        }

    def test_mask_phone(self):
        assert mask_phone("+5215512345678") == "+52***78"
        assert mask_phone(None) == "redacted"
        assert mask_phone("+12") == "***"
