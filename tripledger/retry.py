import logging
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError


logger = logging.getLogger(__name__)
T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    pass


def is_transient_write_error(exc: Exception) -> bool:
    # Locked or dropped connections recover; constraint and data errors do not.
    return isinstance(exc, OperationalError)


def run_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    should_retry: Callable[[Exception], bool] = is_transient_write_error,
) -> T:
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 2):
        try:
            return fn()
        except Exception as exc:
            if not should_retry(exc):
                raise
            last_error = exc
            if attempt > max_retries:
                break
            logger.warning("transient write failure, retrying", extra={"attempt": attempt, "error": str(exc)})
            time.sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(str(last_error)) from last_error
