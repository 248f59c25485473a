# services/retry.py
import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    retry_if: Callable[[BaseException], bool] = lambda e: True,
    label: str = "operation",
) -> T:
    """Await ``operation`` up to ``attempts`` times with linear backoff.

    Before attempt ``k + 1`` the helper sleeps ``k * base_delay`` seconds.
    Only exceptions listed in ``retry_on`` are retried; the last one is
    re-raised once attempts run out, or at once when ``retry_if`` rejects
    it. Cancellation always propagates.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= attempts or not retry_if(e):
                raise
            delay = attempt * base_delay
            logger.warning(f"{label} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.1f}s")
            await sleep(delay)
    raise RuntimeError("retry_with_backoff needs at least one attempt")
