from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from openai import RateLimitError as OpenAIRateLimitError

from labtree.core.errors import RateLimitError
from labtree.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def is_rate_limit(exc: BaseException) -> bool:
    """True for quota / HTTP 429 failures, whichever SDK raised them."""
    if isinstance(exc, OpenAIRateLimitError):
        return True
    for attr in ("status_code", "status", "code"):
        if getattr(exc, attr, None) in (429, "429"):
            return True
    msg = str(exc).lower()
    return "429" in msg or "quota" in msg


def backoff_delay(attempt: int, *, base_s: float, jitter_s: float) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2^attempt plus random jitter."""
    return base_s * (2**attempt) + random.uniform(0, jitter_s)


async def call_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_s: float = 2.0,
    jitter_s: float = 1.0,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run fn, retrying rate-limit failures only. Other errors propagate immediately."""
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            if not is_rate_limit(e):
                raise
            if attempt == attempts - 1:
                raise RateLimitError(
                    code="E_RATE_LIMIT",
                    message=f"rate limit persisted after {attempts} attempts: {e}",
                ) from e
            delay = backoff_delay(attempt, base_s=base_s, jitter_s=jitter_s)
            logger.warning("Rate limit hit. Retrying in %.0fms...", delay * 1000)
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
