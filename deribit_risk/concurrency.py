"""
Bounded fan-out for per-instrument requests
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

from .config import RetryConfig
from .errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def with_backoff(call: Callable[[], Awaitable[R]], attempts: int = 4,
                       base_delay: float = 0.25, max_delay: float = 2.0,
                       sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> R:
    """Retry `call` on RateLimitError only, doubling the delay up to `max_delay`"""
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except RateLimitError as e:
            if attempt >= attempts:
                raise
            logger.warning(f"Rate limited ({e.method}), retry {attempt}/{attempts - 1} in {delay:.2f}s")
            await sleep(delay)
            delay = min(delay * 2, max_delay)
    raise RuntimeError("unreachable")


async def fetch_bounded(items: Iterable[T], fetch: Callable[[T], Awaitable[R]],
                        retry: Optional[RetryConfig] = None,
                        return_exceptions: bool = False,
                        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> List[Optional[R]]:
    """
    Run `fetch` over `items` with at most `retry.limit` calls in flight.

    Results keep the input order. With `return_exceptions`, a failed item
    yields None instead of failing the whole batch; otherwise the first
    failure cancels the calls still queued or in flight.
    """
    retry = retry or RetryConfig()
    semaphore = asyncio.Semaphore(max(1, retry.limit))

    async def run(item: T) -> Optional[R]:
        async with semaphore:
            try:
                return await with_backoff(lambda: fetch(item), retry.attempts,
                                          retry.base_delay, retry.max_delay, sleep)
            except Exception as e:
                if not return_exceptions:
                    raise
                logger.debug(f"Dropping failed fetch for {item}: {e}")
                return None

    tasks = [asyncio.ensure_future(run(item)) for item in items]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
