# consult_dispatch/infra/session_credentials.py
"""
Time-bounded session credentials for the RTC channel.

A credential is ``<session_id>.<expires>.<signature>`` where the signature
is HMAC-SHA256 over ``<session_id>:<expires>`` with the signing key.
Both the requester and the accepting candidate receive the same
credential; the media server verifies it with ``verify_credential``.
"""
from __future__ import annotations

import hashlib
import hmac
import secrets
import time

from consult_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


class HmacCredentialIssuer:
    """CredentialIssuer port implementation using a shared HMAC key."""

    def __init__(self, signing_key: str | None = None, ttl_seconds: int = 3600) -> None:
        if not signing_key:
            signing_key = secrets.token_urlsafe(32)
            logger.warning("No credential signing key configured, using an ephemeral key")
        self._key = signing_key.encode()
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls) -> "HmacCredentialIssuer":
        from consult_dispatch.config import settings

        return cls(
            signing_key=settings.credential_signing_key,
            ttl_seconds=settings.credential_ttl_seconds,
        )

    def _sign(self, session_id: str, expires: int) -> str:
        return hmac.new(
            self._key,
            f"{session_id}:{expires}".encode(),
            hashlib.sha256,
        ).hexdigest()

    async def issue_credential(self, session_id: str) -> str:
        return self.issue(session_id)

    def issue(self, session_id: str, *, now: float | None = None) -> str:
        expires = int(now if now is not None else time.time()) + self._ttl_seconds
        return f"{session_id}.{expires}.{self._sign(session_id, expires)}"

    def verify_credential(
        self,
        credential: str,
        session_id: str,
        *,
        now: float | None = None,
    ) -> tuple[bool, str | None]:
        """
        Check signature, session binding and expiry.

        Returns:
            (is_valid, error_message)
        """
        try:
            cred_session, exp_str, sig = credential.rsplit(".", 2)
            expires = int(exp_str)
        except (ValueError, AttributeError):
            return False, "Malformed credential"

        if not hmac.compare_digest(cred_session, session_id):
            return False, "Credential issued for another session"

        current = now if now is not None else time.time()
        if current > expires:
            return False, "Credential expired"

        if not hmac.compare_digest(sig, self._sign(cred_session, expires)):
            return False, "Invalid signature"

        return True, None
