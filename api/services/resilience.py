"""
Error types and resilience utilities for contact dedup.

Provides:
- Typed errors for scan and merge failures
- Retry logic for transient store failures
- User-friendly error messages
"""
import functools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class DedupError(Exception):
    """Base class for duplicate scan and merge errors."""


class PersonNotFoundError(DedupError):
    """Raised when a person id does not resolve in the workspace."""

    def __init__(self, person_ids: list[str], workspace_id: str):
        self.person_ids = list(person_ids)
        self.workspace_id = workspace_id
        super().__init__(
            f"Person not found in workspace {workspace_id}: {', '.join(self.person_ids)}"
        )


class InvalidPairError(DedupError):
    """Raised when asked to merge a person with themselves."""

    def __init__(self, person_id: str):
        self.person_id = person_id
        super().__init__(f"Cannot merge a person with themselves: {person_id}")


class StoreUnavailableError(DedupError):
    """Raised when the person store fails with a transient I/O error."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


class InvalidRecordError(DedupError):
    """Raised when a stored person row fails validation (bad JSON, wrong column types)."""

    def __init__(self, person_id: str, reason: str):
        self.person_id = person_id
        self.reason = reason
        super().__init__(f"Invalid person record {person_id}: {reason}")


class PartialMergeFailure(DedupError):
    """Raised when a merge step fails; the transaction has been rolled back."""

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"Merge failed at step '{step}': {cause}")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 2
    base_delay: float = 0.5  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (StoreUnavailableError,)


DEFAULT_RETRY_CONFIG = RetryConfig()


def retry_sync(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for sync functions with retry logic.

    Only exceptions listed in ``config.retryable_exceptions`` are retried;
    anything else propagates immediately.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            # Resolved per call so callers can swap the config in tests
            cfg = config or DEFAULT_RETRY_CONFIG
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


def user_friendly_error(error: Exception, operation: str = "merge") -> str:
    """
    Convert exception to user-friendly error message.

    Partial merges never surface as such: a failed merge is always
    reported as a single failure.

    Args:
        error: The exception to convert
        operation: "scan" or "merge"

    Returns:
        User-friendly error message
    """
    if isinstance(error, PersonNotFoundError):
        return "One or both people not found"

    if isinstance(error, InvalidPairError):
        return "Cannot merge a person with themselves"

    if operation == "scan":
        return "Could not load duplicates, try again"

    return "Could not merge contacts"
