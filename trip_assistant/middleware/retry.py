import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from trip_assistant.errors import ProviderTimeoutError, TransientSkillError
from trip_assistant.middleware.event_collector import emit_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_MODEL_RETRIES = 3
MODEL_INITIAL_DELAY = 1.0
MODEL_BACKOFF_FACTOR = 2.0

MAX_SKILL_RETRIES = 2
SKILL_INITIAL_DELAY = 1.5
SKILL_BACKOFF_FACTOR = 2.0

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    ProviderTimeoutError,
    TransientSkillError,
    ConnectionError,
)


def backoff_delay(attempt: int, initial_delay: float, factor: float) -> float:
    """Exponential backoff plus up to 50% jitter."""
    delay = initial_delay * (factor ** attempt)
    return delay + random.uniform(0, delay * 0.5)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    name: str,
    component: str,
    max_attempts: int = MAX_SKILL_RETRIES,
    initial_delay: float = SKILL_INITIAL_DELAY,
    backoff_factor: float = SKILL_BACKOFF_FACTOR,
    timeout: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` with a per-attempt timeout, retrying transient failures.

    A per-attempt timeout is reported as ``ProviderTimeoutError`` and counts as
    transient. Errors outside ``retry_on`` are raised immediately.
    """
    for attempt in range(max_attempts):
        try:
            if timeout is None:
                result = await fn()
            else:
                try:
                    result = await asyncio.wait_for(fn(), timeout)
                except asyncio.TimeoutError as exc:
                    raise ProviderTimeoutError(f"{name} timed out after {timeout:.1f}s") from exc
            if attempt > 0:
                logger.info("%s succeeded on attempt %d/%d", name, attempt + 1, max_attempts)
                emit_event(
                    component=component,
                    status="recovered",
                    message=f"{name} succeeded after {attempt + 1} attempts",
                    details={"attempts": attempt + 1},
                )
            else:
                logger.debug("%s succeeded on first attempt", name)
            return result
        except retry_on as e:
            if attempt == max_attempts - 1:
                logger.error(
                    "%s failed after %d attempts. Final error: %s: %s",
                    name, max_attempts, type(e).__name__, e,
                )
                emit_event(
                    component=component,
                    status="failed",
                    message=f"{name} failed after {max_attempts} attempts",
                    details={"error": f"{type(e).__name__}: {e}", "attempts": max_attempts},
                )
                raise
            sleep_time = backoff_delay(attempt, initial_delay, backoff_factor)
            logger.warning(
                "%s attempt %d/%d failed (%s: %s), retrying in %.1fs",
                name, attempt + 1, max_attempts, type(e).__name__, e, sleep_time,
            )
            emit_event(
                component=component,
                status="retrying",
                message=f"{name} attempt {attempt + 1}/{max_attempts} failed, retrying in {sleep_time:.1f}s",
                details={"error": f"{type(e).__name__}: {e}", "attempt": attempt + 1, "delay_s": round(sleep_time, 1)},
            )
            await sleep(sleep_time)
    raise RuntimeError("unreachable")
