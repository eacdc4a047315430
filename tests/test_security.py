# tests/test_security.py
"""Tests for consult_dispatch/transport/security.py: security utilities."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


# ============================================================================
# Token validation
# ============================================================================

class TestTokenValidation:
    def test_strong_token_no_warnings(self):
        from consult_dispatch.transport.security import validate_token_strength
        token = "aB3cD5eF7gH9iJ1kL3mN5oP7qR9sT1uX"
        assert validate_token_strength(token, "TEST_TOKEN") == []

    def test_short_token_warning(self):
        from consult_dispatch.transport.security import validate_token_strength
        warnings = validate_token_strength("shortAa1", "TEST_TOKEN")
        assert any("too short" in w for w in warnings)

    def test_weak_pattern_warning(self):
        from consult_dispatch.transport.security import validate_token_strength
        token = "A1" * 20 + "password"
        warnings = validate_token_strength(token, "TEST_TOKEN")
        assert any("weak pattern" in w for w in warnings)

    def test_check_configured_tokens_logs(self):
        from consult_dispatch.transport import security

        mock_settings = MagicMock(metrics_token="demo", credential_signing_key=None)
        with patch.object(security, "settings", mock_settings), \
                patch.object(security, "logger") as mock_logger:
            security.check_configured_tokens()

        messages = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert any("METRICS_TOKEN" in m for m in messages)


# ============================================================================
# Metrics auth
# ============================================================================

class TestRequireMetricsAuth:
    def test_open_when_no_token_configured(self):
        from consult_dispatch.transport import security

        with patch.object(security, "settings", MagicMock(metrics_token=None)):
            assert security.require_metrics_auth(None) is None

    def test_missing_credentials(self):
        from consult_dispatch.transport import security

        with patch.object(security, "settings", MagicMock(metrics_token="secret-value")):
            with pytest.raises(HTTPException) as exc_info:
                security.require_metrics_auth(None)
        assert exc_info.value.status_code == 401
        assert exc_info.value.headers["WWW-Authenticate"] == "Bearer"

    def test_wrong_token(self):
        from consult_dispatch.transport import security

        with patch.object(security, "settings", MagicMock(metrics_token="secret-value")):
            with pytest.raises(HTTPException) as exc_info:
                security.require_metrics_auth(_bearer("other"))
        assert exc_info.value.detail == "Invalid credentials"

    def test_valid_token(self):
        from consult_dispatch.transport import security

        with patch.object(security, "settings", MagicMock(metrics_token="secret-value")):
            security.require_metrics_auth(_bearer("secret-value"))


# ============================================================================
# Error sanitizing / headers
# ============================================================================

class TestSanitizeErrorMessage:
    def test_production_hides_details(self):
        from consult_dispatch.transport.security import sanitize_error_message
        assert sanitize_error_message(ValueError("db password=x"), True) == "Internal server error"

    def test_dev_shows_details(self):
        from consult_dispatch.transport.security import sanitize_error_message
        assert sanitize_error_message(ValueError("bad"), False) == "ValueError: bad"


class TestSecurityHeaders:
    def test_hsts_in_production(self):
        from consult_dispatch.transport import security

        response = MagicMock()
        response.headers = {}
        with patch.object(security, "settings", MagicMock(is_production=True, is_staging=False)):
            security.SecurityHeaders.add_security_headers(response)

        assert "Strict-Transport-Security" in response.headers
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_existing_cache_control_kept(self):
        from consult_dispatch.transport import security

        response = MagicMock()
        response.headers = {"Cache-Control": "max-age=5"}
        with patch.object(security, "settings", MagicMock(is_production=False, is_staging=False)):
            security.SecurityHeaders.add_security_headers(response)

        assert response.headers["Cache-Control"] == "max-age=5"
