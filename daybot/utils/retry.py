import asyncio
import functools
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple, Type, TypeVar

from daybot.exceptions import AuthenticationError, UpstreamUnavailable
from daybot.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryOutcome:
    """Result of a policy run: the value (or None) and one reason per failed attempt."""
    value: Optional[object] = None
    attempts: int = 0
    reasons: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry policy with a fixed delay schedule and per-attempt timeout.

    Used for "burst" retries inside a single request, where the next
    scheduled invocation would arrive too late. An attempt "fails" when it
    raises one of ``retry_on``, times out, or returns None.

    Args:
        max_attempts: Total attempts including the first
        delays: Sleep before attempt N+1 is delays[min(N, len-1)]
        attempt_timeout: Seconds allowed per attempt (None = unbounded)
        retry_on: Exception types treated as a failed attempt
    """
    max_attempts: int = 3
    delays: Tuple[float, ...] = (0.5,)
    attempt_timeout: Optional[float] = None
    retry_on: Tuple[Type[BaseException], ...] = (UpstreamUnavailable, asyncio.TimeoutError)

    @classmethod
    def fixed(cls, attempts: int, delay: float, attempt_timeout: Optional[float] = None) -> "RetryPolicy":
        return cls(max_attempts=attempts, delays=(delay,), attempt_timeout=attempt_timeout)

    def delay_for(self, attempt_index: int) -> float:
        if not self.delays:
            return 0.0
        return self.delays[min(attempt_index, len(self.delays) - 1)]

    async def run(
        self,
        fn: Callable[[], Awaitable[Optional[T]]],
        *,
        label: str = "operation",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> RetryOutcome:
        """Run ``fn`` until it returns a value or attempts are exhausted. Never raises ``retry_on``."""
        outcome = RetryOutcome()
        for attempt in range(self.max_attempts):
            outcome.attempts = attempt + 1
            try:
                if self.attempt_timeout is not None:
                    value = await asyncio.wait_for(fn(), timeout=self.attempt_timeout)
                else:
                    value = await fn()
            except AuthenticationError:
                raise
            except self.retry_on as e:
                reason = f"{label} attempt {attempt + 1}: {type(e).__name__}: {e}"
                outcome.reasons.append(reason)
                logger.warning("RETRY_ATTEMPT_FAILED", label=label, attempt=attempt + 1, error=str(e))
            else:
                if value is not None:
                    outcome.value = value
                    return outcome
                outcome.reasons.append(f"{label} attempt {attempt + 1}: unavailable")

            if attempt + 1 < self.max_attempts:
                await sleep(self.delay_for(attempt))

        logger.warning("RETRY_EXHAUSTED", label=label, attempts=outcome.attempts)
        return outcome


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Tuple[Type[Exception], ...] = (UpstreamUnavailable,),
):
    """
    Decorator to retry async functions on transient errors.

    Implements exponential backoff with jitter. Authentication failures are
    never retried.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types to retry on
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except AuthenticationError:
                    raise
                except transient_errors as e:
                    if retry_count >= max_retries:
                        logger.warning(
                            f"Max retries ({max_retries}) exhausted for {func.__name__}",
                            error=str(e)
                        )
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__}, retrying ({retry_count + 1}/{max_retries})",
                        error=str(e),
                        wait=f"{backoff:.2f}s"
                    )
                    await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.5)  # Jitter

        return wrapper
    return decorator
