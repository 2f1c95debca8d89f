import os
import time
import logging
from typing import Any, Callable, Tuple, Type

logger = logging.getLogger(os.getenv("LOGGER_NAME", "NODE_IDENTITY_DAEMON"))


def exponential_backoff_retry(func: Callable,
                              max_retries: int = 3,
                              initial_delay: float = 1.0,
                              max_delay: float = 30.0,
                              backoff_factor: float = 2.0,
                              retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                              sleep: Callable[[float], None] = time.sleep) -> Any:
    """
    Call func, retrying with exponential backoff while it raises retry_on.

    Delays run initial_delay, initial_delay * backoff_factor, ... capped at
    max_delay. Total attempts are max_retries + 1.

    Args:
        func (Callable): Zero-argument callable (use a lambda to bind arguments).
        max_retries (int): Retries after the first attempt. Must be >= 0.
        initial_delay (float): Delay before the first retry. Must be >= 0.
        max_delay (float): Upper bound for any single delay.
        backoff_factor (float): Multiplier applied per retry. Must be >= 1.0.
        retry_on (tuple): Exception types that trigger a retry; anything else
            propagates immediately.
        sleep (Callable): Sleep function, injectable for tests.

    Returns:
        Any: The return value of the first successful call.

    Raises:
        ValueError: If the parameters are out of range.
        Exception: The last exception raised once retries are exhausted.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    if initial_delay < 0:
        raise ValueError("initial_delay must be >= 0")
    if backoff_factor < 1.0:
        raise ValueError("backoff_factor must be >= 1.0")

    delay = initial_delay
    for attempt in range(max_retries + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == max_retries:
                logger.error(f"All {max_retries + 1} attempts failed: {e}")
                raise
            wait = min(delay, max_delay)
            logger.warning(f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                           f"Retrying in {wait:.2f}s")
            sleep(wait)
            delay *= backoff_factor
