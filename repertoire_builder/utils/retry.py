# repertoire_builder/utils/retry.py
"""
An asynchronous retry decorator for transient storage and network errors.

SQLite in WAL mode occasionally reports "database is locked" while another
connection commits, and the opening explorer occasionally times out. Both are
worth a few more attempts before the error is allowed to surface.
"""
import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

import structlog

from repertoire_builder.utils import metrics

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

DEFAULT_TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
)


def _backoff_delays(attempts: int, initial_s: float, max_s: float, jitter_factor: float):
    """Yields the sleep before each retry: doubling, capped, with +/- jitter."""
    delay = initial_s
    for _ in range(attempts - 1):
        jitter = random.uniform(-delay * jitter_factor, delay * jitter_factor)
        yield min(max_s, delay + jitter)
        delay *= 2


def retry_with_backoff(
    attempts: int = 3,
    initial_backoff_s: float = 0.5,
    max_backoff_s: float = 5.0,
    jitter_factor: float = 0.2,
    exceptions_to_catch: Tuple[Type[Exception], ...] = DEFAULT_TRANSIENT_EXCEPTIONS,
    db_type: str = "unknown",
) -> Callable[[F], F]:
    """
    Re-runs the decorated coroutine function when it raises a transient error.

    Args:
        attempts: Total number of tries, including the first.
        initial_backoff_s: Sleep before the first retry; doubled for each further retry.
        max_backoff_s: Upper bound on any single sleep.
        jitter_factor: Random spread applied to each sleep, as a fraction of it.
        exceptions_to_catch: Exception types considered transient.
        db_type: Label recorded on the transient-error counter.
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            delays = _backoff_delays(attempts, initial_backoff_s, max_backoff_s, jitter_factor)
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except exceptions_to_catch as e:
                    metrics.DB_TRANSIENT_ERRORS_TOTAL.labels(db_type=db_type).inc()
                    wait_time = next(delays, None)
                    if wait_time is None:
                        logger.error(
                            "Giving up after transient errors.",
                            function=func.__name__, attempts=attempt, error=str(e),
                        )
                        raise
                    logger.warning(
                        "Transient error, retrying.",
                        function=func.__name__, attempt=attempt,
                        wait_seconds=round(wait_time, 2), error=str(e),
                    )
                    await asyncio.sleep(wait_time)
        return wrapper  # type: ignore[return-value]
    return decorator
