"""
Error taxonomy and retry utilities for the identity service.

Provides:
- Exceptions surfaced to callers (not found, validation, conflict)
- Exceptions for external collaborators (unified API, job queue)
- Retry logic for transient failures
"""
import functools
import logging
import time
from typing import Callable, TypeVar, Optional, Any
from dataclasses import dataclass

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (Exception,)


DEFAULT_RETRY_CONFIG = RetryConfig()


class NotFoundError(Exception):
    """Raised when a referenced record is missing or belongs to another organization."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")


class ValidationError(Exception):
    """Raised when an operation's input is invalid (self-merge, claimed domain, ...)."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a record is in a state that forbids the operation."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ServiceUnavailableError(Exception):
    """Raised when an external service is unavailable."""

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        self.service = service
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"{service}: {message}")


class EnqueueError(Exception):
    """Raised when a downstream job could not be enqueued after all attempts."""

    def __init__(self, job_name: str, attempts: int, cause: Exception):
        self.job_name = job_name
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Failed to enqueue {job_name} after {attempts} attempts: {cause}")


def retry_sync(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for sync functions with retry logic.

    Args:
        config: Retry configuration
        on_retry: Optional callback on each retry (retry_num, exception)
    """
    cfg = config or DEFAULT_RETRY_CONFIG

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            last_exception = None

            for attempt in range(cfg.max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except cfg.retryable_exceptions as e:
                    last_exception = e

                    if attempt < cfg.max_retries:
                        delay = min(
                            cfg.base_delay * (cfg.exponential_base ** attempt),
                            cfg.max_delay
                        )
                        logger.warning(
                            f"Retry {attempt + 1}/{cfg.max_retries} for {func.__name__}: {e}. "
                            f"Waiting {delay:.1f}s..."
                        )

                        if on_retry:
                            on_retry(attempt + 1, e)

                        time.sleep(delay)
                    else:
                        logger.error(
                            f"All {cfg.max_retries} retries exhausted for {func.__name__}: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator


def is_retryable_status(status_code: int) -> bool:
    """Check if an HTTP status code indicates a retryable error."""
    return status_code == 429 or 500 <= status_code < 600


def error_payload(error: Exception) -> dict[str, Any]:
    """Render a caller-facing error as a JSON-friendly dict."""
    payload: dict[str, Any] = {"error": type(error).__name__, "message": str(error)}
    if isinstance(error, NotFoundError):
        payload["entity"] = error.entity
        payload["entity_id"] = error.entity_id
    return payload
