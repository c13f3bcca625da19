"""
Retry helpers for remote directory calls.

Microsoft Graph throttles bursts of requests with HTTP 429 and occasionally
answers with transient 5xx errors. Remote queries go through retry_call with
the attempts and backoff configured under error_handling.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)
TRANSIENT_MESSAGES = (
    'timed out', 'timeout', 'connection reset', 'connection refused',
    'network is unreachable', 'temporary failure', 'service unavailable',
    'too many requests'
)


class RetryableError(Exception):
    """Marker base for failures that are always worth another attempt."""


class MaxRetriesExceeded(Exception):
    """Every attempt failed; carries the attempt count and the final error."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Gave up after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: Optional[dict] = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call func(*args, **kwargs) until it succeeds or attempts run out.

    Only exceptions of the given types are retried, and only when
    should_retry (if given) accepts them; anything else propagates at once.
    The wait starts at ``delay`` and is multiplied by ``backoff`` after each
    failed attempt. on_retry(attempt, error) is invoked before each wait.

    Raises:
        MaxRetriesExceeded: After the last attempt has failed
    """
    kwargs = kwargs or {}
    attempts = max(1, max_attempts)
    wait = delay
    failure = None

    for attempt in range(1, attempts + 1):
        try:
            value = func(*args, **kwargs)
        except exceptions as e:
            if should_retry is not None and not should_retry(e):
                raise
            failure = e
            if attempt == attempts:
                break
            logger.debug(f"Attempt {attempt}/{attempts} raised {type(e).__name__}: {e}; "
                         f"next attempt in {wait:.1f}s")
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")
            time.sleep(wait)
            wait *= backoff
        else:
            if attempt > 1:
                logger.info(f"Succeeded on attempt {attempt}")
            return value

    raise MaxRetriesExceeded(attempts, failure)


def retry_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map the error_handling section (max_retries, retry_wait_seconds,
    retry_backoff) to retry_call keyword arguments.
    """
    return {
        'max_attempts': int(config.get('max_retries', 3)) + 1,
        'delay': float(config.get('retry_wait_seconds', 2)),
        'backoff': float(config.get('retry_backoff', 2.0)),
    }


def is_retryable_error(exception: Exception) -> bool:
    """
    True for transient failures: lost connections, timeouts, throttling and
    5xx responses. An HTTP status, when present, decides on its own.
    """
    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        return status_code in RETRYABLE_STATUS_CODES

    text = str(exception).lower()
    return any(fragment in text for fragment in TRANSIENT_MESSAGES)


def is_throttled_error(exception: Exception) -> bool:
    """True if the remote side rejected the request as throttled (HTTP 429)."""
    return getattr(exception, 'status_code', None) == 429


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Build an on_retry callback that logs a warning naming the operation."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying after {type(exception).__name__}: {exception}")

    return on_retry
