# consult_dispatch/infra/fcm_sender.py
"""
Firebase Cloud Messaging (HTTP v1) outbound sender.

Sends call invitations as high-priority *data* messages so the
candidate app can show its own incoming-call UI.

Authentication:
- A Firebase service account (fcm_credentials_file or the base64
  FIREBASE_CREDENTIALS blob) is loaded with google-auth.
- OAuth2 access tokens are minted from it and refreshed whenever they
  expire. A 401 from FCM forces one refresh and one resend.

Error classification (FcmSendError):
- Token unregistered / not found    → stale      (clear the token, try next candidate)
- Token from another sender project → stale
- Malformed registration token      → stale
- Auth failure (401/403)           → NOT retryable (needs human intervention)
- Rate limiting (429)              → retryable
- Network / timeout / 5xx          → retryable  (transient)

The dispatch engine makes exactly one attempt per candidate; "retryable"
only tells it the failure is transient rather than a dead address.

HTTP session lifecycle:
- One lazily created aiohttp session per process, see get_fcm_session().
- Call close_fcm_session() during application shutdown.
"""
from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from typing import Any, Callable

import aiohttp
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from consult_dispatch.config import settings
from consult_dispatch.core.dispatch.domain import SendResult
from consult_dispatch.infra.logging_config import get_logger, mask_token
from consult_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)

FCM_API_BASE = "https://fcm.googleapis.com/v1"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"

# FCM error codes that mean the token will never work again
_STALE_ERROR_CODES = {"UNREGISTERED", "SENDER_ID_MISMATCH"}

# Kept well below the dispatch response window
_SESSION_TIMEOUT = aiohttp.ClientTimeout(total=10, connect=5)

_session: aiohttp.ClientSession | None = None


# ---------------------------------------------------------------------------
# HTTP session
# ---------------------------------------------------------------------------

def get_fcm_session() -> aiohttp.ClientSession:
    """Shared session for FCM calls, recreated if it was closed."""
    global _session
    if _session is None or _session.closed:
        _session = aiohttp.ClientSession(
            timeout=_SESSION_TIMEOUT,
            connector=aiohttp.TCPConnector(keepalive_timeout=30, limit=20),
        )
        logger.debug("FCM HTTP session created")
    return _session


async def close_fcm_session() -> None:
    global _session
    session, _session = _session, None
    if session is not None and not session.closed:
        await session.close()
        logger.debug("FCM HTTP session closed")


# ---------------------------------------------------------------------------
# Service-account credentials
# ---------------------------------------------------------------------------

def load_service_account_info(
    *,
    credentials_file: str | None = None,
    credentials_base64: str | None = None,
) -> dict | None:
    """
    Read the Firebase service-account JSON.

    The base64 blob wins over the file path. Returns None when neither is
    configured.

    Raises:
        ValueError: the configured credentials cannot be decoded
    """
    blob = credentials_base64 if credentials_base64 is not None else settings.fcm_credentials_base64
    path = credentials_file if credentials_file is not None else settings.fcm_credentials_file

    try:
        if blob:
            return json.loads(base64.b64decode(blob).decode("utf-8"))
        if path:
            return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ValueError(f"Invalid FCM service-account credentials: {exc}") from exc
    return None


class FcmAccessTokenProvider:
    """
    Hands out OAuth2 bearer tokens for the FCM v1 API.

    google-auth refreshes synchronously, so refreshes run in a worker
    thread; the lock keeps concurrent sends from refreshing twice.
    """

    def __init__(
        self,
        credentials: Any,
        *,
        request_factory: Callable[[], Any] = GoogleAuthRequest,
    ) -> None:
        self._credentials = credentials
        self._request_factory = request_factory
        self._lock = asyncio.Lock()

    @classmethod
    def from_service_account_info(cls, info: dict) -> "FcmAccessTokenProvider":
        credentials = service_account.Credentials.from_service_account_info(info, scopes=[FCM_SCOPE])
        return cls(credentials)

    async def get_token(self, *, force_refresh: bool = False) -> str:
        """Current bearer token, refreshed first when expired or forced."""
        async with self._lock:
            if force_refresh or not self._credentials.valid:
                try:
                    await asyncio.to_thread(self._credentials.refresh, self._request_factory())
                except GoogleAuthError as exc:
                    logger.error(f"FCM access token refresh failed: {exc}")
                    inc_counter("fcm_token_refresh_failed")
                    raise FcmSendError(0, "AUTH_REFRESH_FAILED", str(exc), retryable=True) from exc
                inc_counter("fcm_token_refreshed")
                logger.info("FCM access token refreshed")
            return self._credentials.token


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _send_url(project_id: str) -> str:
    """Build FCM v1 messages:send URL."""
    return f"{FCM_API_BASE}/projects/{project_id}/messages:send"


def _auth_headers(access_token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json; UTF-8",
    }


def _error_code(body: dict | None) -> str | None:
    """Extract the FCM-specific errorCode (falls back to the google.rpc status)."""
    error = (body or {}).get("error") or {}
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("errorCode"):
            return detail["errorCode"]
    return error.get("status")


# ---------------------------------------------------------------------------
# Error type
# ---------------------------------------------------------------------------

class FcmSendError(Exception):
    """Error sending a message via FCM.

    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        error_code: FCM error code (UNREGISTERED, QUOTA_EXCEEDED, ...).
        retryable:  Transient failure; a later attempt may succeed.
        stale:      The registration token is dead and should be forgotten.
    """

    def __init__(
        self,
        status: int,
        error_code: str | None,
        message: str,
        *,
        retryable: bool = False,
        stale: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        self.stale = stale
        super().__init__(f"FCM error {status} (code={error_code}): {message}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def send_data_message(
    token: str,
    data: dict[str, str],
    *,
    project_id: str,
    access_token: str,
    ttl_seconds: int = 30,
) -> dict:
    """
    Send a data-only message to one device.

    Args:
        token: Device registration token
        data: String-only key/value payload
        project_id: Firebase project
        access_token: OAuth2 bearer for the FCM v1 API
        ttl_seconds: Drop the message if it cannot be delivered in time

    Returns:
        FCM response dict (``{"name": "projects/.../messages/..."}``)

    Raises:
        FcmSendError: On API errors (check .stale / .retryable)
    """
    payload = {
        "message": {
            "token": token,
            "data": data,
            "android": {"priority": "high", "ttl": f"{ttl_seconds}s"},
            "apns": {
                "headers": {
                    "apns-priority": "10",
                    "apns-expiration": "0",
                },
                "payload": {"aps": {"content-available": 1}},
            },
        }
    }

    return await _send_request(
        _send_url(project_id),
        payload,
        token,
        access_token=access_token,
    )


class FcmNotificationSender:
    """NotificationSender port implementation backed by FCM."""

    def __init__(
        self,
        *,
        project_id: str | None = None,
        token_provider: FcmAccessTokenProvider | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self._project_id = project_id
        self._token_provider = token_provider
        self._ttl_seconds = ttl_seconds or max(1, int(settings.dispatch_response_timeout_seconds))

    @classmethod
    def from_settings(cls) -> "FcmNotificationSender":
        """Build from fcm_* settings; the project defaults to the service account's."""
        info = load_service_account_info()
        if info is None:
            return cls(project_id=settings.fcm_project_id)
        return cls(
            project_id=settings.fcm_project_id or info.get("project_id"),
            token_provider=FcmAccessTokenProvider.from_service_account_info(info),
        )

    @property
    def name(self) -> str:
        return "fcm"

    def is_configured(self) -> bool:
        return bool(self._project_id and self._token_provider)

    async def send(self, address: str, payload: dict[str, str]) -> SendResult:
        if not self.is_configured():
            logger.warning("FCM sender not configured (fcm_credentials_file / FIREBASE_CREDENTIALS)")
            return SendResult.transient("fcm not configured")

        try:
            try:
                await self._send_once(address, payload)
            except FcmSendError as exc:
                if exc.status != 401:
                    raise
                logger.warning("FCM rejected the access token, refreshing and resending")
                await self._send_once(address, payload, force_refresh=True)
        except FcmSendError as exc:
            if exc.stale:
                return SendResult.stale_address(str(exc))
            return SendResult.transient(str(exc))

        return SendResult.success()

    async def _send_once(self, address: str, payload: dict[str, str], *, force_refresh: bool = False) -> None:
        access_token = await self._token_provider.get_token(force_refresh=force_refresh)
        await send_data_message(
            address,
            payload,
            project_id=self._project_id,
            access_token=access_token,
            ttl_seconds=self._ttl_seconds,
        )


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        logger.warning(f"FCM returned non-JSON body: status={resp.status}")
        return None


def classify_error(status: int, body: dict | None) -> FcmSendError:
    """Map an FCM error response onto FcmSendError flags."""
    error_code = _error_code(body)
    message = ((body or {}).get("error") or {}).get("message", "Unknown error")

    if error_code in _STALE_ERROR_CODES or status == 404:
        return FcmSendError(status, error_code, message, stale=True)

    if status == 400 and "registration token" in message.lower():
        return FcmSendError(status, error_code, message, stale=True)

    if status in (401, 403):
        return FcmSendError(status, error_code, message, retryable=False)

    if status == 400:
        return FcmSendError(status, error_code, message, retryable=False)

    # 429 and everything else: optimistic
    return FcmSendError(status, error_code, message, retryable=True)


async def _send_request(
    url: str,
    payload: dict,
    token: str,
    *,
    access_token: str,
) -> dict:
    """
    Execute an FCM v1 request with error handling.
    """
    masked = mask_token(token)
    try:
        session = get_fcm_session()
        async with session.post(
            url,
            json=payload,
            headers=_auth_headers(access_token),
        ) as resp:
            body = await _safe_response_json(resp)

            if resp.status == 200:
                msg_name = (body or {}).get("name", "unknown")
                logger.info(f"FCM message sent: to={masked}, name={msg_name}")
                inc_counter("fcm_outbound_sent")
                return body or {}

            # --- Error path ------------------------------------------------
            exc = classify_error(resp.status, body)

            if exc.stale:
                logger.warning(f"FCM token is stale: to={masked}, code={exc.error_code}")
                inc_counter("fcm_outbound_stale_token")
            elif exc.status in (401, 403):
                logger.error(f"FCM auth error: {exc}")
                inc_counter("fcm_outbound_auth_error")
            elif exc.status == 429:
                logger.warning(f"FCM rate limited: to={masked}")
                inc_counter("fcm_outbound_rate_limited")
            else:
                logger.error(f"FCM error: to={masked}, {exc}")
                inc_counter("fcm_outbound_error")

            raise exc

    except FcmSendError:
        raise
    except aiohttp.ClientError as exc:
        logger.error(f"FCM connection error: {exc}", exc_info=True)
        inc_counter("fcm_outbound_connection_error")
        raise FcmSendError(0, None, str(exc), retryable=True)
    except asyncio.TimeoutError as exc:
        logger.error(f"FCM request timed out: to={masked}")
        inc_counter("fcm_outbound_timeout")
        raise FcmSendError(0, None, "timeout", retryable=True) from exc
