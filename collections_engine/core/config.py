"""Application configuration and settings."""

from functools import lru_cache
from typing import List, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Service Configuration
    service_name: str = Field(default="collections-workflow-engine")
    service_version: str = Field(default="1.0.0")
    port: int = Field(default=8000)
    host: str = Field(default="0.0.0.0")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    environment: str = Field(default="development")

    # Public URL used for tracking links embedded in outbound email
    public_base_url: str = Field(default="http://localhost:8000")

    # Storage
    store_backend: str = Field(default="sqlalchemy")  # sqlalchemy | supabase
    database_url: str = Field(default="sqlite:///./collections_engine.db")
    auto_create_tables: bool = Field(default=True)
    supabase_url: Optional[str] = Field(default=None)
    supabase_key: Optional[str] = Field(default=None)

    # Scheduler
    scheduler_enabled: bool = Field(default=False)
    scheduler_interval_seconds: int = Field(default=300)
    poll_batch_size: int = Field(default=50)
    poll_max_batch_size: int = Field(default=200)
    poll_concurrency: int = Field(default=5)
    poll_deadline_seconds: float = Field(default=240.0)
    dispatch_timeout_seconds: float = Field(default=10.0)
    stale_execution_minutes: int = Field(default=30)

    # Execution retry policy
    execution_max_attempts: int = Field(default=3)
    retry_base_delay_minutes: int = Field(default=15)
    retry_max_delay_minutes: int = Field(default=240)

    # Channel transports
    mock_external_services: bool = Field(default=True)
    sendgrid_api_key: Optional[str] = Field(default=None)
    sendgrid_base_url: str = Field(default="https://api.sendgrid.com")
    default_from_email: str = Field(default="collections@example.com")
    default_from_name: str = Field(default="Collections Agency")
    twilio_account_sid: Optional[str] = Field(default=None)
    twilio_auth_token: Optional[str] = Field(default=None)
    twilio_from_number: Optional[str] = Field(default=None)
    twilio_base_url: str = Field(default="https://api.twilio.com")
    lob_api_key: Optional[str] = Field(default=None)
    lob_base_url: str = Field(default="https://api.lob.com")

    # Circuit Breaker Configuration
    circuit_breaker_failure_threshold: int = Field(default=5)
    circuit_breaker_timeout_seconds: int = Field(default=60)

    # Webhooks
    delivery_webhook_secret: Optional[str] = Field(default=None)
    outbound_webhook_timeout_seconds: float = Field(default=5.0)
    outbound_webhook_max_attempts: int = Field(default=3)

    enable_cors: bool = Field(default=True)
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"]
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("sqlalchemy", "supabase"):
            raise ValueError("store_backend must be 'sqlalchemy' or 'supabase'")
        return v

    @field_validator(
        "scheduler_interval_seconds",
        "poll_batch_size",
        "poll_max_batch_size",
        "poll_concurrency",
        "execution_max_attempts",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be a positive integer")
        return v

    @field_validator("dispatch_timeout_seconds", "poll_deadline_seconds")
    @classmethod
    def validate_timeouts(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts must be greater than zero")
        return v

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }


@lru_cache()
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
