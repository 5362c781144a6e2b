"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Credit Engine API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger and provider routing for image processing"

    # Security - ledger routes require X-API-Key when set
    api_key: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credit-engine"

    # Payment Provider - Stripe
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_webhook_tolerance_seconds: int = 300

    # Webhook application retries (exponential backoff)
    webhook_retry_attempts: int = 3
    webhook_retry_initial_delay: float = 0.2
    webhook_retry_max_delay: float = 5.0
    # A processing claim older than this may be taken over by a redelivery
    webhook_claim_lease_seconds: int = 300

    # Credits
    free_user_initial_credits: int = 10
    credit_minimum_cost: int = 1
    credit_maximum_cost: int = 20

    # AI providers
    provider_timeout_seconds: float = 60.0
    gemini_endpoint: str = ""
    gemini_api_key: str = ""
    gemini_daily_request_limit: int = 500
    gemini_monthly_credit_limit: int = 15000
    replicate_endpoint: str = ""
    replicate_api_key: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.credit_minimum_cost < 0:
            errors.append("CREDIT_MINIMUM_COST must be non-negative")
        if self.credit_maximum_cost < self.credit_minimum_cost:
            errors.append("CREDIT_MAXIMUM_COST must be >= CREDIT_MINIMUM_COST")

        if self.webhook_retry_attempts < 1:
            errors.append("WEBHOOK_RETRY_ATTEMPTS must be at least 1")
        if self.webhook_claim_lease_seconds <= 0:
            errors.append("WEBHOOK_CLAIM_LEASE_SECONDS must be positive")

        if self.log_format not in ("json", "console"):
            errors.append(f"LOG_FORMAT must be 'json' or 'console', got: {self.log_format}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def is_sqlite(self) -> bool:
        """True when running against SQLite (tests, local development)."""
        return self.database_url.startswith("sqlite")


# Global settings instance - validates at import time
settings = Settings()
