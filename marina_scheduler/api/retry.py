# marina_scheduler/api/retry.py
#
# Bounded retry with exponential backoff for weather provider HTTP calls.
# Never used for reschedule writes: a date conflict must reach the caller.

import logging
import time
from functools import wraps
from typing import Callable, Tuple, Type

logger = logging.getLogger(__name__)


def retry_sync(
    max_retries: int = 2,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
    exponential_base: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = None,
):
    """
    Decorator retrying a synchronous call on the given exceptions.

    Usage:
        @retry_sync(max_retries=2, retry_on=(requests.ConnectionError,))
        def fetch():
            ...

    The last exception is re-raised once max_retries retries have failed.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            delay = initial_delay
            attempts = max_retries + 1

            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt == attempts:
                        logger.error(f"All {attempts} attempts failed for {func.__name__}: {e}")
                        raise
                    logger.warning(
                        f"Attempt {attempt}/{attempts} failed for {func.__name__}: {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    (sleep or time.sleep)(delay)
                    delay = min(delay * exponential_base, max_delay)

        return wrapper
    return decorator
