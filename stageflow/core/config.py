"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Tenant fallback when an organization has no timezone configured
    DEFAULT_TIMEZONE: str = "America/New_York"

    # Email delivery (Resend). Empty key = dry run, messages are logged only.
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@example.com"

    # SMS delivery (Twilio). Empty credentials = dry run.
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""

    # Dispatcher / worker
    WORKER_POLL_INTERVAL: int = 60  # seconds between sweeps
    WORKER_BATCH_SIZE: int = 50  # max due rows claimed per sweep
    SEND_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_BASE_SECONDS: int = 60
    RETRY_BACKOFF_MAX_SECONDS: int = 3600
    STALE_CLAIM_SECONDS: int = 900  # in_progress rows older than this are reclaimed
    SEND_TIMEOUT_SECONDS: float = 20.0

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def email_dry_run(self) -> bool:
        return not self.RESEND_API_KEY

    @property
    def sms_dry_run(self) -> bool:
        return not (self.TWILIO_ACCOUNT_SID and self.TWILIO_AUTH_TOKEN and self.TWILIO_FROM_NUMBER)


settings = Settings()
