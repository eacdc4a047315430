# consult_dispatch/config.py
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Dispatch engine
    dispatch_response_timeout_seconds: float = 30.0  # Watchdog window per invited candidate
    dispatch_max_extra_cycles: int = 1  # Full passes over the candidate list after the first one
    dispatch_message_type: str = "call"  # "type" discriminator in the invitation payload
    dispatch_session_prefix: str = "consult"  # RTC channel/session id prefix
    dispatch_outcome_history: int = 256  # Terminal outcomes kept in memory for observers

    # Responder Directory
    # "memory"   - in-process directory, optionally seeded from a JSON file
    # "postgres" - responders table via asyncpg
    directory_backend: Literal["memory", "postgres"] = "memory"
    directory_seed_file: str | None = None  # JSON list of {id, name, language, push_token}

    # Database (postgres directory backend)
    database_url: str | None = None
    pg_pool_min: int = 1
    pg_pool_max: int = 10

    # Notification delivery
    # "fcm" - Firebase Cloud Messaging HTTP v1
    # "log" - log invitations only (dev)
    notification_backend: Literal["fcm", "log"] = "log"
    fcm_project_id: str | None = None  # Defaults to the service account's project_id
    fcm_credentials_file: str | None = None  # Firebase service-account JSON path
    fcm_credentials_base64: str | None = Field(
        default=None,
        validation_alias=AliasChoices("fcm_credentials_base64", "firebase_credentials"),
    )  # Same JSON, base64-encoded (FIREBASE_CREDENTIALS)

    # Session credentials
    credential_signing_key: str | None = None
    credential_ttl_seconds: int = 3600

    # HTTP surface
    allowed_origins: list[str] = ["*"]
    rate_limit_per_minute: int = 60
    enable_request_logging: bool = True
    metrics_token: str | None = None  # Bearer token for /metrics (open when unset)

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def fcm_enabled(self) -> bool:
        """Check if FCM delivery is configured"""
        return bool(self.fcm_credentials_file or self.fcm_credentials_base64)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("credential_signing_key", self.credential_signing_key),
        ]

        if self.notification_backend == "fcm":
            required_fields.extend([
                ("fcm_credentials", self.fcm_enabled),
            ])

        if self.directory_backend == "postgres":
            required_fields.append(("database_url", self.database_url))

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.dispatch_response_timeout_seconds <= 0:
        warnings.append("dispatch_response_timeout_seconds <= 0: candidates get no time to answer.")

    if s.dispatch_max_extra_cycles < 0:
        warnings.append("dispatch_max_extra_cycles < 0 is treated as 0 (single pass).")

    if s.notification_backend == "log" and (s.is_production or s.is_staging):
        warnings.append(f"{s.app_env}: notification_backend=log (invitations are never delivered).")

    if s.notification_backend == "fcm" and not s.fcm_enabled:
        warnings.append("notification_backend=fcm but no fcm_credentials_file or FIREBASE_CREDENTIALS is set.")

    if not s.credential_signing_key:
        warnings.append("credential_signing_key is not set (an ephemeral key is generated per process).")

    if s.directory_backend == "memory" and not s.directory_seed_file:
        warnings.append("directory_backend=memory without directory_seed_file: the directory starts empty.")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not s.metrics_token:
        warnings.append("metrics_token is not set: /metrics is unauthenticated.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
