"""
Bounded retry with exponential backoff.

Only errors whose ErrorKind is RETRYABLE are retried; terminal errors and
unknown exceptions propagate on the first attempt. call_with_timeout bounds
a single attempt and turns the timeout into a retryable ProviderTimeoutError.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from bookstack.core.exceptions import ProviderTimeoutError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0           # Delay after the first failure
    exponential_base: float = 2.0     # 1s, 2s, 4s ...
    max_delay: float = 60.0           # Maximum delay cap
    jitter_factor: float = 0.0        # Random jitter (0-1)
    timeout_seconds: Optional[float] = 15.0  # Per attempt

    def delay_for(self, attempt: int) -> float:
        """
        Delay after failed attempt number `attempt` (1-based).

        Formula: min(base * (exp_base ^ (attempt - 1)) + jitter, max_delay)
        """
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        if self.jitter_factor:
            delay += delay * self.jitter_factor * (2 * random.random() - 1)
        return max(0.0, min(delay, self.max_delay))


async def call_with_timeout(func: Callable[..., Awaitable[T]], *args, timeout: Optional[float], label: str) -> T:
    if not timeout:
        return await func(*args)
    try:
        return await asyncio.wait_for(func(*args), timeout=timeout)
    except asyncio.TimeoutError:
        raise ProviderTimeoutError(f"{label} timed out after {timeout:g}s", provider=label)


async def with_retry(
    func: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    label: str = "call",
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Execute an async function with exponential backoff retry.

    Args:
        func: Zero-argument async callable, invoked once per attempt
        policy: Attempt count and delays
        label: Name used in logs
        should_retry: Predicate on the raised error
        sleep: Awaitable sleep (injectable for tests)

    Returns:
        Result of the first successful attempt

    Raises:
        The last error once attempts are exhausted, or the first non-retryable error
    """
    policy = policy or RetryPolicy()
    if policy.max_attempts < 1:
        raise ValueError("RetryPolicy.max_attempts must be at least 1")

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func()
        except Exception as e:
            if not should_retry(e) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                f"[Retry:{label}] Attempt {attempt}/{policy.max_attempts} failed: {e}, "
                f"waiting {delay:.1f}s"
            )
            await sleep(delay)

    raise AssertionError("retry loop exited without result")
