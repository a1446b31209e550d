"""Tests for the service error taxonomy and log redaction."""

import pytest

from warden.logging import (
    _add_correlation_id,
    _redact_credentials,
    hash_identifier,
    set_correlation_id,
)
from warden.service.errors import (
    AlreadySuspendedError,
    DisabledError,
    NotActivatedError,
    ServiceError,
    SuspendedError,
    UserNotFoundError,
    ValidationError,
)


class TestServiceErrors:
    @pytest.mark.parametrize(
        "cls,status,code",
        [
            (ValidationError, 400, "validation_error"),
            (SuspendedError, 429, "suspended"),
            (AlreadySuspendedError, 409, "already_suspended"),
            (NotActivatedError, 403, "not_activated"),
            (DisabledError, 403, "disabled"),
            (UserNotFoundError, 404, "user_not_found"),
        ],
    )
    def test_status_and_code(self, cls, status, code):
        exc = cls("boom")
        assert isinstance(exc, ServiceError)
        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.message == "boom"
        assert exc.detail == {}

    def test_overrides(self):
        exc = ServiceError("x", status_code=418, error_code="teapot", detail={"a": 1})
        assert (exc.status_code, exc.error_code, exc.detail) == (418, "teapot", {"a": 1})
        assert ServiceError("y").status_code == 400


class TestRedaction:
    def test_secret_fields_are_masked(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "password_reset_requested",
                "reset_token": "abcdefgh",
                "activation_code": "xyz",
                "email": "alice@example.com",
            },
        )
        assert event["event"] == "password_reset_requested"
        assert event["reset_token"] == "***"
        assert event["activation_code"] == "***"
        assert event["email"] == "***@example.com"

    def test_error_code_is_not_a_secret(self):
        event = _redact_credentials(None, "info", {"event": "e", "error_code": "suspended"})
        assert event["error_code"] == "suspended"

    def test_other_fields_untouched(self):
        event = _redact_credentials(None, "info", {"event": "e", "user_id": "1234567"})
        assert event["user_id"] == "1234567"

    def test_identifier_hash_is_stable_and_opaque(self):
        assert hash_identifier("alice") == hash_identifier("alice")
        assert hash_identifier("alice") != hash_identifier("bob")
        assert "alice" not in hash_identifier("alice")
        assert len(hash_identifier("alice")) == 16

    def test_correlation_id_is_attached(self):
        cid = set_correlation_id("req-1")
        assert _add_correlation_id(None, "info", {"event": "e"})["correlation_id"] == cid
