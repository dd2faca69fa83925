"""
Retry utilities for warehouse queries and batch writes.

A single bounded-attempts combinator (RetryContext) is shared by every
operation that retries; the delay between attempts is fixed.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Type

import aiohttp

from app.utils.logger import log


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0):
        """Record a retry attempt."""
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {str(error)}"
            self.last_error = error_str
            self.errors.append(error_str)

    def mark_success(self):
        """Mark the operation as successful."""
        self.success = True

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


# Default retryable exceptions (network/API errors)
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    aiohttp.ClientError,
)


def is_retryable_error(
    error: Exception,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
    retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504)
) -> bool:
    """
    Check if an error is retryable.

    Args:
        error: The exception to check
        retryable_exceptions: Tuple of exception types to retry
        retryable_status_codes: HTTP status codes to retry

    Returns:
        True if error should be retried
    """
    if isinstance(error, retryable_exceptions):
        return True

    status = getattr(error, "status", None)
    if status in retryable_status_codes:
        return True

    error_str = str(error).lower()

    if "rate limit" in error_str or "too many requests" in error_str or "quota exceeded" in error_str:
        return True

    if "backenderror" in error_str or "internal error" in error_str:
        return True

    if "timeout" in error_str or "timed out" in error_str:
        return True

    return False


class RetryContext:
    """
    Bounded-attempts retry with stats tracking.

    Usage:
        async with RetryContext(max_attempts=3, base_delay=0.5) as ctx:
            result = await ctx.execute(write_batch, rows)
            log.info(ctx.stats.to_dict())
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
        label: str = "operation",
        sleep: Callable = asyncio.sleep,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.retryable_exceptions = retryable_exceptions
        self.label = label
        self._sleep = sleep
        self.stats = RetryStats()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass

    async def execute(self, func: Callable, *args, **kwargs):
        """Execute a function with retry logic. Re-raises the last error."""
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                if asyncio.iscoroutinefunction(func):
                    result = await func(*args, **kwargs)
                else:
                    result = func(*args, **kwargs)

                self.stats.record_attempt()
                self.stats.mark_success()

                if attempt > 1:
                    log.info(
                        f"{self.label} succeeded on attempt {attempt} "
                        f"after {self.stats.total_delay_seconds:.1f}s total delay"
                    )
                return result

            except Exception as e:
                last_error = e

                if attempt >= self.max_attempts or not is_retryable_error(e, self.retryable_exceptions):
                    self.stats.record_attempt(error=e)
                    raise

                delay = self.base_delay

                self.stats.record_attempt(error=e, delay=delay)

                log.warning(
                    f"{self.label} attempt {attempt} failed: {e}. Retrying in {delay:.1f}s..."
                )

                await self._sleep(delay)

        raise last_error if last_error else RuntimeError("Retry exhausted")
