"""Bounded retry with backoff for idempotent AWS calls (describe / poll only)."""
import functools
import logging
import random
import time
from typing import Callable, Optional

from botocore.exceptions import ClientError, EndpointConnectionError

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "InternalError",
    "InternalFailure",
}


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, EndpointConnectionError):
        return True
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code") in TRANSIENT_ERROR_CODES
    return False


def retry_transient(
    max_attempts: int = 3,
    sleep: Optional[Callable[[float], None]] = None,
    retry_on: Callable[[BaseException], bool] = is_transient,
):
    """Retry the wrapped call on transient backend errors.

    Never wrap create/terminate calls with this: they are not idempotent.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    attempt += 1
                    if attempt >= max_attempts or not retry_on(e):
                        raise
                    delay = compute_backoff(attempt)
                    logger.warning(
                        f"{func.__name__} failed with transient error ({e}); "
                        f"retry {attempt}/{max_attempts - 1} in {delay:.1f}s"
                    )
                    (sleep or time.sleep)(delay)
        return wrapper
    return decorator


def client_error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""
