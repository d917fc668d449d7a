# caseflow/core/config.py
"""
Application configuration using Pydantic Settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
import json
from pydantic import field_validator


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables
    """

    # Application
    APP_NAME: str = "Caseflow"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str

    # JWT Authentication
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"

    # AWS Configuration
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "us-east-1"

    # S3
    S3_BUCKET_NAME: str = "caseflow-case-files"
    S3_ENDPOINT_URL: str = ""  # MinIO / localstack

    # Signed URL lifetimes (seconds)
    PREVIEW_URL_TTL_SECONDS: int = 3600            # 1 hour
    INPUT_ARCHIVE_URL_TTL_SECONDS: int = 8 * 3600  # 8 hours
    CSV_URL_TTL_SECONDS: int = 24 * 3600           # 24 hours

    # Analysis backend
    BACKEND_API_URL: str = "http://localhost:8001"
    BACKEND_GENERIC_PATH: str = "/jobs"
    BACKEND_TIMEOUT_SECONDS: float = 60.0
    WEBHOOK_TOKEN: str = ""  # empty disables the header check

    # Result download retries (reads only)
    READ_RETRY_ATTEMPTS: int = 3
    READ_RETRY_BASE_DELAY_SECONDS: float = 1.5

    # Result extraction
    CSV_EXTRACTION_POLICY: str = "at_least_one"  # at_least_one | all

    # Notifications
    EMAIL_PROVIDER: str = "dev"  # dev | resend
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = ""
    OPS_ALERT_EMAILS: str = ""
    SUPPORT_EMAIL: str = ""
    SUPPORT_TICKET_TASKS: str = "final-analysis"

    # Watchdog
    JOB_TIMEOUT_HOURS: float = 6.0
    TIMEOUT_SWEEP_INTERVAL_MINUTES: int = 15
    SCHEDULER_ENABLED: bool = True

    # Idempotency
    IDEMPOTENCY_TTL_HOURS: int = 24

    # CORS
    CORS_ORIGINS: str = '["http://localhost:3000"]'

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("BACKEND_API_URL", mode="before")
    @classmethod
    def strip_backend_url(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v

    @field_validator("CSV_EXTRACTION_POLICY", mode="before")
    @classmethod
    def normalize_extraction_policy(cls, v: str) -> str:
        value = (v or "at_least_one").strip().lower()
        if value not in {"at_least_one", "all"}:
            raise ValueError("CSV_EXTRACTION_POLICY must be 'at_least_one' or 'all'")
        return value

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from string to list"""
        try:
            if isinstance(self.CORS_ORIGINS, str):
                return json.loads(self.CORS_ORIGINS)
            return self.CORS_ORIGINS
        except json.JSONDecodeError:
            return [part.strip() for part in self.CORS_ORIGINS.split(",") if part.strip()]

    @property
    def ops_alert_emails_list(self) -> List[str]:
        return _split_csv(self.OPS_ALERT_EMAILS)

    @property
    def support_ticket_tasks_list(self) -> List[str]:
        return _split_csv(self.SUPPORT_TICKET_TASKS)


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


# Create settings instance
settings = Settings()
