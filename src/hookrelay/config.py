"""Configuration management for HookRelay."""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """HookRelay configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the HOOKRELAY_ prefix. For example:
        HOOKRELAY_MAX_ATTEMPTS=8
        HOOKRELAY_STORAGE_BACKEND=qdrant
        HOOKRELAY_CUSTOM_RETRY_DELAYS='[1, 5, 30]'
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    storage_backend: Literal["memory", "qdrant"] = Field(
        default="memory",
        description="Where endpoints and deliveries are persisted",
    )
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (optional for local)",
    )
    collection_prefix: str = Field(
        default="hookrelay",
        description="Prefix for Qdrant collection names",
    )

    # Retry strategy
    retry_strategy: Literal["exponential", "linear", "fixed", "custom"] = Field(
        default="exponential",
        description="Backoff policy applied to failed deliveries",
    )
    max_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum delivery attempts (exponential, linear, fixed)",
    )
    initial_retry_delay: float = Field(
        default=1.0,
        gt=0.0,
        description="Initial retry delay in seconds (exponential)",
    )
    max_retry_delay: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound for a single retry delay in seconds (exponential)",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Growth factor between retries (exponential)",
    )
    retry_jitter: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Fractional +/- jitter applied to exponential delays",
    )
    linear_retry_delay: float = Field(
        default=5.0,
        gt=0.0,
        description="Base delay in seconds for linear backoff",
    )
    fixed_retry_delay: float = Field(
        default=10.0,
        gt=0.0,
        description="Delay in seconds between fixed-delay retries",
    )
    custom_retry_delays: list[float] = Field(
        default_factory=list,
        description="Explicit delay sequence in seconds for the custom strategy",
    )

    # Outbound requests
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for a single outbound webhook request",
    )
    enable_signature: bool = Field(
        default=True,
        description="Sign outbound requests with the endpoint secret",
    )
    signature_header: str = Field(
        default="X-Webhook-Signature",
        description="Header carrying 't=<ts>,v1=<hex>'",
    )
    timestamp_header: str = Field(
        default="X-Webhook-Timestamp",
        description="Header carrying the signing timestamp",
    )
    user_agent: str = Field(
        default="HookRelay-Webhooks/1.0",
        description="User-Agent sent with every delivery",
    )
    signature_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        description="Accepted clock skew when verifying signatures",
    )
    response_body_limit: int = Field(
        default=1000,
        ge=0,
        le=100_000,
        description="Maximum characters of a response body kept on a delivery",
    )

    # Dispatcher / poller
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Interval between retry poller ticks",
    )
    poll_batch_size: int = Field(
        default=100,
        ge=1,
        le=10_000,
        description="Maximum due deliveries processed per poller tick",
    )
    max_concurrent_deliveries: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum outbound requests in flight at once",
    )
    max_retry_after_seconds: float = Field(
        default=86_400.0,
        ge=0.0,
        le=31_536_000.0,
        description="Upper bound on a receiver's Retry-After that is honoured",
    )
    lease_seconds: int = Field(
        default=60,
        ge=1,
        description="How long a claimed delivery stays locked to one worker",
    )
    cleanup_default_days: int = Field(
        default=30,
        ge=0,
        description="Default retention for terminal deliveries",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log format: json (production) or text (development)",
    )

    model_config = {
        "env_prefix": "HOOKRELAY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @model_validator(mode="after")
    def validate_retry_settings(self) -> "Settings":
        """Validate that the selected retry strategy is coherent.

        The exponential cap must not be below the initial delay, and the
        custom strategy needs at least one delay to be useful.
        """
        if self.max_retry_delay < self.initial_retry_delay:
            raise ValueError(
                f"max_retry_delay ({self.max_retry_delay}) must be >= "
                f"initial_retry_delay ({self.initial_retry_delay})"
            )
        if self.retry_strategy == "custom" and not self.custom_retry_delays:
            raise ValueError("custom_retry_delays must be set when retry_strategy is 'custom'")
        if any(delay < 0 for delay in self.custom_retry_delays):
            raise ValueError("custom_retry_delays must not contain negative values")
        if self.env == "production" and not self.enable_signature:
            logger.warning("Webhook signing is disabled in production")
        return self


# Global settings instance
settings = Settings()
