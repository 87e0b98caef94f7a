from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Redis settings (job and batch state)
    UPSTASH_REDIS_REST_URL: str = ""
    UPSTASH_REDIS_REST_TOKEN: str = ""

    # QStash settings (delayed delivery queue)
    QSTASH_URL: str = "https://qstash.upstash.io"
    QSTASH_TOKEN: str | None = None
    QSTASH_CURRENT_SIGNING_KEY: str | None = None
    QSTASH_NEXT_SIGNING_KEY: str | None = None
    QSTASH_RETRIES: int = 5
    QSTASH_FLOW_CONTROL_KEY: str = "resend-emails"
    QSTASH_FLOW_CONTROL_RATE: int = 2
    QSTASH_FLOW_CONTROL_PARALLELISM: int = 1

    # Resend settings (mail provider)
    RESEND_API_URL: str = "https://api.resend.com"
    RESEND_API_KEY: str | None = None
    RESEND_FROM_EMAIL: str = "noreply@example.com"

    # Delivery overrides
    EMAIL_TEST_MODE: bool = False
    EMAIL_TEST_RECIPIENT: str | None = None
    EMAIL_SUBJECT_PREFIX: str = ""

    # BaseQL settings (session / task records)
    BASEQL_API_URL: str | None = None
    BASEQL_API_KEY: str | None = None

    # Public URL used for queue callbacks and links inside emails
    APP_BASE_URL: str = "http://localhost:8000"
    CRON_SECRET: str | None = None
    ADMIN_API_TOKEN: str | None = None

    # Request context
    TRUST_X_FORWARDED_FOR: bool = False
    TRUSTED_PROXY_IPS: list[str] = []

    # =================================================================
    # EMAIL JOB SETTINGS
    # =================================================================
    EMAIL_HISTORY_RETENTION_DAYS: int = 90
    ACTIVE_BATCH_TTL_HOURS: int = 24
    MAX_DELIVERY_ATTEMPTS: int = 3
    MAX_SCHEDULE_DAYS: int = 30
    WORKER_MAX_DURATION_SECONDS: float = 60.0
    ORPHANED_JOB_GRACE_MINUTES: int = 30

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def app_url(self) -> str:
        return self.APP_BASE_URL.rstrip("/")

    def redis_host(self) -> str | None:
        """
        Extract the Upstash host from UPSTASH_REDIS_REST_URL, e.g.
        https://eu1-sunny-12345.upstash.io -> eu1-sunny-12345.upstash.io
        """
        rest_url = self.UPSTASH_REDIS_REST_URL.strip()
        if not rest_url:
            return None
        parsed = urlparse(rest_url)
        host = parsed.hostname
        if not host:
            host = urlparse(f"https://{rest_url}").hostname
        return host

    def queue_configured(self) -> bool:
        return bool(self.QSTASH_TOKEN)

    def mail_configured(self) -> bool:
        return bool(self.RESEND_API_KEY)

    def signing_keys(self) -> list[str]:
        """Current key first; QStash rotates keys by promoting `next`."""
        return [k for k in (self.QSTASH_CURRENT_SIGNING_KEY, self.QSTASH_NEXT_SIGNING_KEY) if k]

    def flow_control_value(self) -> str:
        return (
            f"rate={self.QSTASH_FLOW_CONTROL_RATE},"
            f"parallelism={self.QSTASH_FLOW_CONTROL_PARALLELISM},period=1s"
        )

    def retention_seconds(self) -> int:
        return 60 * 60 * 24 * self.EMAIL_HISTORY_RETENTION_DAYS

    def active_batch_ttl_seconds(self) -> int:
        return 60 * 60 * self.ACTIVE_BATCH_TTL_HOURS


settings = Settings()
