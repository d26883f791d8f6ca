import logging

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings

from mailsync.environment import EnvironmentName
from settings.log import LoggingSettings


class DatabaseSettings(BaseSettings):
    host: str = Field(alias="DATABASE_HOST", default="postgresql://localhost:5432")
    name: str = Field(alias="DATABASE_NAME", default="mailsync")
    min_pool_size: int = Field(alias="DATABASE_MIN_POOL_SIZE", default=5)
    max_pool_size: int = Field(alias="DATABASE_MAX_POOL_SIZE", default=20)

    @property
    def async_host(self) -> str:
        """Return the host URL with async driver for SQLAlchemy async engine."""
        return self.host.replace("postgresql://", "postgresql+asyncpg://", 1)


class SentrySettings(BaseSettings):
    dsn: str | None = Field(alias="SENTRY_DSN", default=None)

    @property
    def is_enabled(self) -> bool:
        return bool(self.dsn)


class IMAPSettings(BaseSettings):
    timeout: int = Field(alias="IMAP_TIMEOUT", default=30)
    connections_per_host: int = Field(alias="IMAP_CONNECTIONS_PER_HOST", default=10)
    requests_per_second: float = Field(alias="IMAP_REQUESTS_PER_SECOND", default=9)


class SMTPSettings(BaseSettings):
    timeout: int = Field(alias="SMTP_TIMEOUT", default=30)


class SyncSettings(BaseSettings):
    default_frequency_seconds: int = Field(alias="SYNC_DEFAULT_FREQUENCY", default=15)
    min_frequency_seconds: int = Field(alias="SYNC_MIN_FREQUENCY", default=10)
    max_batch: int = Field(alias="SYNC_MAX_BATCH", default=50)
    backoff_base_seconds: float = Field(alias="SYNC_BACKOFF_BASE", default=5)
    backoff_cap_seconds: float = Field(alias="SYNC_BACKOFF_CAP", default=600)
    failure_flag_threshold: int = Field(alias="SYNC_FAILURE_FLAG_THRESHOLD", default=5)
    thread_recency_days: int = Field(alias="SYNC_THREAD_RECENCY_DAYS", default=30)
    use_provider_thread_ids: bool = Field(alias="SYNC_USE_PROVIDER_THREAD_IDS", default=True)
    account_refresh_interval: int = Field(alias="SYNC_ACCOUNT_REFRESH_INTERVAL", default=30)
    run_in_api: bool = Field(alias="SYNC_RUN_IN_API", default=False)
    reconciliation_max_age_hours: int = Field(alias="SYNC_RECONCILIATION_MAX_AGE_HOURS", default=24)
    lease_seconds: int = Field(alias="SYNC_LEASE_SECONDS", default=600)


class OutboundSettings(BaseSettings):
    gmail_hourly_limit: int = Field(alias="OUTBOUND_GMAIL_HOURLY_LIMIT", default=100)
    gmail_daily_limit: int = Field(alias="OUTBOUND_GMAIL_DAILY_LIMIT", default=500)
    outlook_hourly_limit: int = Field(alias="OUTBOUND_OUTLOOK_HOURLY_LIMIT", default=150)
    outlook_daily_limit: int = Field(alias="OUTBOUND_OUTLOOK_DAILY_LIMIT", default=1000)
    smtp_hourly_limit: int = Field(alias="OUTBOUND_SMTP_HOURLY_LIMIT", default=200)
    smtp_daily_limit: int = Field(alias="OUTBOUND_SMTP_DAILY_LIMIT", default=2000)

    spam_hard_block_score: float = Field(alias="OUTBOUND_SPAM_HARD_BLOCK_SCORE", default=7.0)
    spam_warn_score: float = Field(alias="OUTBOUND_SPAM_WARN_SCORE", default=5.0)
    spam_confirm_score: float = Field(alias="OUTBOUND_SPAM_CONFIRM_SCORE", default=6.0)

    send_timeout: float = Field(alias="OUTBOUND_SEND_TIMEOUT", default=60)
    min_text_body_length: int = Field(alias="OUTBOUND_MIN_TEXT_BODY_LENGTH", default=10)

    def limits_for(self, provider: str) -> tuple[int, int]:
        """Return the (hourly, daily) caps for a provider kind name."""
        hourly = getattr(self, f"{provider}_hourly_limit", self.smtp_hourly_limit)
        daily = getattr(self, f"{provider}_daily_limit", self.smtp_daily_limit)
        return hourly, daily


class OAuthSettings(BaseSettings):
    google_client_id: str = Field(alias="GOOGLE_CLIENT_ID", default="")
    google_client_secret: str = Field(alias="GOOGLE_CLIENT_SECRET", default="")
    microsoft_client_id: str = Field(alias="MICROSOFT_CLIENT_ID", default="")
    microsoft_client_secret: str = Field(alias="MICROSOFT_CLIENT_SECRET", default="")
    microsoft_tenant: str = Field(alias="MICROSOFT_TENANT", default="common")
    redirect_uri: str = Field(alias="OAUTH_REDIRECT_URI", default="http://localhost:8001/oauth/callback")
    token_refresh_margin_seconds: int = Field(alias="OAUTH_TOKEN_REFRESH_MARGIN", default=120)
    http_timeout: float = Field(alias="OAUTH_HTTP_TIMEOUT", default=30)


class CircuitBreakerSettings(BaseSettings):
    failure_threshold: int = Field(alias="CIRCUIT_BREAKER_FAILURE_THRESHOLD", default=5)
    reset_timeout_seconds: float = Field(alias="CIRCUIT_BREAKER_RESET_TIMEOUT", default=30)


class APISettings(BaseSettings):
    user_header: str = Field(alias="API_USER_HEADER", default="X-Authenticated-User")
    csrf_header: str = Field(alias="API_CSRF_HEADER", default="X-CSRF-Token")
    csrf_cookie: str = Field(alias="API_CSRF_COOKIE", default="csrf_token")


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "extra": "allow"}

    environment: EnvironmentName = Field(alias="ENVIRONMENT")
    password_encryption_key: str = Field(alias="PASSWORD_ENCRYPTION_KEY")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)
    imap: IMAPSettings = Field(default_factory=IMAPSettings)
    smtp: SMTPSettings = Field(default_factory=SMTPSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    outbound: OutboundSettings = Field(default_factory=OutboundSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    api: APISettings = Field(default_factory=APISettings)

    @field_validator("environment", mode="before")
    def set_environment(cls, value: str, info: ValidationInfo) -> EnvironmentName:
        try:
            return EnvironmentName(value)
        except ValueError:
            logging.getLogger(__name__).warning(f"Invalid environment: {value}")
            return EnvironmentName.DEVELOPMENT
