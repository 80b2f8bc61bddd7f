from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from locator_synthesis.core.exceptions import GenerationError

log = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    call: Callable[[], Awaitable[T]],
    max_retries: int,
    initial_delay: float,
    retry_on: tuple[type[BaseException], ...] = (GenerationError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Awaits call up to max_retries + 1 times, doubling the delay after each failure."""

    delay = initial_delay
    last_error: BaseException | None = None
    for attempt in range(max_retries + 1):
        try:
            return await call()
        except retry_on as exc:
            last_error = exc
            if attempt < max_retries:
                log.warning(
                    "Generation call failed, retrying (%d/%d) in %.2fs: %s",
                    attempt + 1,
                    max_retries,
                    delay,
                    exc,
                )
                await sleep(delay)
                delay *= 2
    if last_error is None:
        raise ValueError(f"max_retries must be >= 0, got {max_retries}")
    raise last_error
