import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from .errors import RateLimited, TransientNetworkError
from .log import logger as log

T = TypeVar("T")

MAX_DELAY = 30.0


def retry_delay(attempt_number: int, backoff_factor: float) -> float:
    base_delay = min(MAX_DELAY, backoff_factor ** attempt_number) if backoff_factor > 0 else 0.0
    jitter = random.uniform(0.1, 0.3) * base_delay
    return base_delay + jitter


async def call_with_retries(operation: Callable[[], Awaitable[T]], *, attempts: int, backoff_factor: float,
                            what: str, sleep=asyncio.sleep) -> T:
    """Run ``operation`` until it succeeds or the attempt ceiling is reached.

    RateLimited waits for the hinted delay, other transient failures back off
    exponentially. Anything that is not transient propagates on the first try.
    When every attempt failed the last error is surfaced as a terminal
    TransientNetworkError.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except RateLimited as e:
            last = e
            delay = min(MAX_DELAY, e.retry_after)
        except TransientNetworkError as e:
            last = e
            delay = retry_delay(attempt, backoff_factor)
        if attempt == attempts:
            break
        log.warning(f"{what}: {last} - retry {attempt}/{attempts - 1} in {delay:.1f}s")
        await sleep(delay)
    raise TransientNetworkError(f"{what}: gave up after {attempts} attempts ({last.message})",
                                file_id=last.file_id, session_id=last.session_id,
                                chunk_index=last.chunk_index) from last
