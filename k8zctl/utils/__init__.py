"""Utility functions and helpers for the k8zctl application."""
import logging
import threading
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from ..config import Config, RetryPolicy

T = TypeVar('T')

logger = logging.getLogger("k8zctl.utils")


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


class RetryError(Exception):
    """Raised when an operation still fails after all retry attempts."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class FatalError(Exception):
    """Wraps an error that must not be retried."""

    def __init__(self, error: BaseException):
        super().__init__(str(error))
        self.error = error


def retry_call(
    func: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    cancel: Optional[threading.Event] = None,
    description: str = "operation",
) -> T:
    """Call ``func`` retrying on ``exceptions`` with exponential backoff.

    ``policy.max_attempts`` counts the total number of calls. A
    :class:`FatalError` raised by ``func`` stops immediately and its wrapped
    error is re-raised. Backoff sleeps wait on ``cancel`` so a set event
    ends the loop early; the last error is then raised as-is.
    """
    policy = policy or RetryPolicy()
    cancel = cancel or threading.Event()
    last_exception: Optional[BaseException] = None

    for attempt in range(1, max(1, policy.max_attempts) + 1):
        try:
            return func()
        except FatalError as e:
            raise e.error
        except exceptions as e:
            last_exception = e
            if attempt >= policy.max_attempts:
                break
            wait_time = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                description, attempt, policy.max_attempts, e, wait_time,
            )
            if cancel.wait(wait_time):
                raise last_exception

    raise RetryError(
        f"{description} failed after {policy.max_attempts} attempts: {last_exception}",
        attempts=policy.max_attempts,
    ) from last_exception

