"""
Retry logic with exponential backoff using tenacity.

Used for short in-process retries (store round trips, outbound tenant
webhooks). Execution-level retries across polls are a scheduling concern
and live in the step executor.
"""
from typing import Callable, Optional
from dataclasses import dataclass
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_random_exponential,
    retry_if_exception_type,
    RetryCallState,
)

logger = structlog.get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry logic."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
        OSError,
    )


def _log_before_sleep(service_name: str, config: RetryConfig) -> Callable[[RetryCallState], None]:
    def _before_sleep(retry_state: RetryCallState) -> None:
        logger.warning(
            "Retrying failed operation",
            service=service_name,
            attempt=retry_state.attempt_number,
            max_attempts=config.max_attempts,
            delay=retry_state.next_action.sleep,
            exception=str(retry_state.outcome.exception()),
        )

    return _before_sleep


def create_async_retry_decorator(
    config: Optional[RetryConfig] = None,
    service_name: str = "Unknown Service",
) -> Callable:
    """Create a retry decorator specifically for async functions."""

    config = config or RetryConfig()

    # wait_random_exponential spreads concurrent retries apart
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_random_exponential(
            multiplier=config.base_delay,
            max=config.max_delay,
            exp_base=config.exponential_base,
        ),
        retry=retry_if_exception_type(config.retryable_exceptions),
        before_sleep=_log_before_sleep(service_name, config),
        reraise=True,
    )


def get_database_retry_config() -> RetryConfig:
    """Get retry configuration optimized for database operations."""
    return RetryConfig(
        max_attempts=3,
        base_delay=0.5,
        max_delay=5.0,
        retryable_exceptions=(
            ConnectionError,
            TimeoutError,
            OSError,
        ),
    )


def get_webhook_retry_config(max_attempts: int = 3) -> RetryConfig:
    """Get retry configuration for outbound tenant webhooks."""
    import httpx

    return RetryConfig(
        max_attempts=max_attempts,
        base_delay=0.5,
        max_delay=10.0,
        retryable_exceptions=(
            httpx.TransportError,
            httpx.HTTPStatusError,
        ),
    )
