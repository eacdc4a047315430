# consult_dispatch/transport/security.py
"""
Security helpers for the HTTP surface.

- Constant-time bearer comparison for /metrics
- Weak token detection at startup
- OWASP response headers
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from consult_dispatch.config import settings
from consult_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# 32 bytes = 256 bits
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Return warnings for a weak secret (empty list when it looks fine).
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    return warnings


def check_configured_tokens() -> None:
    """Log warnings for weak secrets. Called from app startup."""
    if settings.metrics_token:
        for warning in validate_token_strength(settings.metrics_token, "METRICS_TOKEN"):
            logger.warning(f"SECURITY: {warning}")

    if settings.credential_signing_key:
        for warning in validate_token_strength(
            settings.credential_signing_key, "CREDENTIAL_SIGNING_KEY"
        ):
            logger.warning(f"SECURITY: {warning}")


def require_metrics_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Dependency for /metrics.

    When METRICS_TOKEN is set a matching Bearer token is required,
    otherwise the endpoint is open (bind it to a private interface).
    """
    if not settings.metrics_token:
        return

    if not credentials:
        logger.warning("Metrics endpoint accessed without token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials, settings.metrics_token):
        logger.warning(
            "Invalid metrics token attempt",
            extra={"token_prefix": credentials.credentials[:4] if len(credentials.credentials) >= 4 else "***"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


class SecurityHeaders:
    """OWASP recommended headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        # Dispatch state changes every second; never cache it
        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """Hide internal error details from clients in production."""
    if is_production:
        return "Internal server error"
    return f"{error.__class__.__name__}: {error}"
