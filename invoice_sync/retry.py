"""
Retryable remote call wrapper shared by the drive adapter and workbook manager.

Transient failures (network errors, 429, 5xx) are retried with exponential
backoff (base, 2*base, 4*base, ...). Everything else is raised on the first
attempt. After the last attempt the final exception is re-raised unchanged so
callers can still inspect its status code.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from invoice_sync.errors import GraphError, RemoteUnavailable

T = TypeVar('T')

Sleep = Callable[[float], Awaitable[None]]
RetryPredicate = Callable[[BaseException], bool]


def is_transient(exc: BaseException) -> bool:
    """Network failure, throttling or server error."""
    if isinstance(exc, RemoteUnavailable):
        return True
    if isinstance(exc, GraphError):
        status = exc.status_code
        return status is None or status == 429 or status >= 500
    return False


def is_provisioning_race(exc: BaseException) -> bool:
    """Transient, or the item-not-found reply Graph gives right after a workbook is created."""
    if is_transient(exc):
        return True
    return isinstance(exc, GraphError) and (exc.status_code == 404 or exc.code == "ItemNotFound")


@dataclass
class RetryPolicy:
    """Attempt count, base delay and sleep function for remote calls."""
    attempts: int = 3
    base_delay: float = 1.0
    sleep: Sleep = field(default=asyncio.sleep)

    def delay_for(self, attempt: int, base_delay: Optional[float] = None) -> float:
        """Delay before ``attempt`` (1-based retry number)."""
        base = self.base_delay if base_delay is None else base_delay
        return base * (2 ** (attempt - 1))

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        operation: str,
        is_retryable: RetryPredicate = is_transient,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ) -> T:
        max_attempts = max(1, attempts or self.attempts)
        last_error: Optional[BaseException] = None

        for attempt in range(max_attempts):
            if attempt > 0:
                delay = self.delay_for(attempt, base_delay)
                logger.info(f"Retry {attempt}/{max_attempts - 1} for {operation}, waiting {delay}s")
                await self.sleep(delay)

            try:
                return await call()
            except Exception as e:
                if not is_retryable(e):
                    raise
                last_error = e
                logger.warning(f"{operation} failed (attempt {attempt + 1}/{max_attempts}): {e}")

        logger.error(f"{operation} failed after {max_attempts} attempts: {last_error}")
        raise last_error
