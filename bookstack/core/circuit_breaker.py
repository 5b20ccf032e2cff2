"""
Circuit Breaker Pattern Implementation

One breaker per enrichment provider, owned by the pipeline's
CircuitBreakerRegistry (never module-global).

States:
- CLOSED: Normal operation, calls pass through and are recorded in a rolling window
- OPEN: Error rate in the window crossed the threshold, calls are blocked
- HALF_OPEN: Cool-down elapsed, exactly one trial call is let through

Trial success closes the circuit and clears the window. Trial failure re-opens
it with a doubled cool-down (capped at MAX_BACKOFF_MULTIPLIER).
"""
import logging
import time
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from bookstack.core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Rolling-window circuit breaker for external provider calls.

    Attributes:
        name: Identifier for this circuit breaker
        error_rate_threshold: Error rate (0.0-1.0) in the window that opens the circuit
        minimum_calls: Calls needed in the window before the rate is trusted
        window_seconds: Width of the rolling window
        reset_timeout: Base seconds to stay OPEN before the half-open trial
    """

    ERROR_RATE_THRESHOLD = 0.50
    MINIMUM_CALLS = 5
    WINDOW_SECONDS = 10.0
    RESET_TIMEOUT = 30.0
    MAX_BACKOFF_MULTIPLIER = 16

    def __init__(
        self,
        name: str,
        error_rate_threshold: Optional[float] = None,
        minimum_calls: Optional[int] = None,
        window_seconds: Optional[float] = None,
        reset_timeout: Optional[float] = None,
        counts_as_failure: Optional[Callable[[BaseException], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Unique identifier for this circuit
            counts_as_failure: Predicate deciding whether an exception is a health
                failure. Defaults to every exception.
            clock: Monotonic seconds source (injectable for tests)
        """
        self.name = name
        self.error_rate_threshold = error_rate_threshold or self.ERROR_RATE_THRESHOLD
        self.minimum_calls = minimum_calls or self.MINIMUM_CALLS
        self.window_seconds = window_seconds or self.WINDOW_SECONDS
        self.reset_timeout = reset_timeout or self.RESET_TIMEOUT
        self._counts_as_failure = counts_as_failure or (lambda error: True)
        self._clock = clock

        # State
        self._state = CircuitState.CLOSED
        self._window: Deque[Tuple[float, bool]] = deque()  # (timestamp, failed)
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self.backoff_multiplier = 1

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_blocked = 0
        self.last_state_change: Optional[datetime] = None

        logger.debug(
            f"[CircuitBreaker:{self.name}] Initialized with "
            f"error_rate_threshold={self.error_rate_threshold}, "
            f"window={self.window_seconds}s, reset_timeout={self.reset_timeout}s"
        )

    @property
    def state(self) -> CircuitState:
        """Current state; an OPEN circuit whose cool-down elapsed reads as HALF_OPEN."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self.state = CircuitState.HALF_OPEN
        return self._state

    @state.setter
    def state(self, new_state: CircuitState):
        """Set circuit state with logging."""
        if new_state != self._state:
            old_state = self._state
            self._state = new_state
            self.last_state_change = datetime.now(timezone.utc)
            logger.info(
                f"[CircuitBreaker:{self.name}] State changed: {old_state.value} -> {new_state.value}"
            )

    def get_retry_after_seconds(self) -> float:
        """Seconds until the circuit will allow a trial call."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self.reset_timeout * self.backoff_multiplier - elapsed)

    def is_call_permitted(self) -> bool:
        """Check if a call is permitted through the circuit."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN:
            return not self._trial_in_flight
        return False

    def error_rate(self) -> float:
        self._prune()
        if not self._window:
            return 0.0
        failures = sum(1 for _, failed in self._window if failed)
        return failures / len(self._window)

    async def execute(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            CircuitOpenError: If circuit is OPEN (or a half-open trial is already running)
            Exception: Re-raises any exception from func
        """
        if not self.is_call_permitted():
            self.total_blocked += 1
            retry_after = self.get_retry_after_seconds()
            logger.warning(
                f"[CircuitBreaker:{self.name}] Call blocked - circuit {self._state.value}. "
                f"Retry after {retry_after:.0f}s"
            )
            raise CircuitOpenError(self.name, retry_after)

        trial = self._state == CircuitState.HALF_OPEN
        if trial:
            self._trial_in_flight = True
        self.total_calls += 1

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if self._counts_as_failure(e):
                self._on_failure(e, trial)
            else:
                self._on_success(trial)
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        self._on_success(trial)
        return result

    def _on_success(self, trial: bool):
        if trial:
            # Service recovered, close the circuit
            self.state = CircuitState.CLOSED
            self.backoff_multiplier = 1
            self._window.clear()
            self._opened_at = None
            logger.info(f"[CircuitBreaker:{self.name}] CLOSED - service recovered")
            return
        self._record(failed=False)

    def _on_failure(self, error: BaseException, trial: bool):
        self.total_failures += 1

        if trial:
            # Failed during recovery test, back to OPEN with increased backoff
            self.backoff_multiplier = min(self.backoff_multiplier * 2, self.MAX_BACKOFF_MULTIPLIER)
            self._open()
            logger.warning(
                f"[CircuitBreaker:{self.name}] OPENED (half-open trial failed) - "
                f"error={type(error).__name__}, backoff={self.backoff_multiplier}x"
            )
            return

        self._record(failed=True)
        if self._state != CircuitState.CLOSED:
            return

        calls = len(self._window)
        rate = self.error_rate()
        if calls >= self.minimum_calls and rate >= self.error_rate_threshold:
            self._open()
            logger.warning(
                f"[CircuitBreaker:{self.name}] OPENED - "
                f"calls={calls}, error_rate={rate:.1%}, error={type(error).__name__}"
            )

    def _open(self):
        self.state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._window.clear()

    def _record(self, failed: bool):
        self._window.append((self._clock(), failed))
        self._prune()

    def _prune(self):
        horizon = self._clock() - self.window_seconds
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

    def _cooldown_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock() - self._opened_at >= self.reset_timeout * self.backoff_multiplier

    def reset(self):
        """Manually reset the circuit breaker to CLOSED state."""
        self.state = CircuitState.CLOSED
        self._window.clear()
        self._opened_at = None
        self._trial_in_flight = False
        self.backoff_multiplier = 1
        logger.info(f"[CircuitBreaker:{self.name}] Manually reset to CLOSED")

    def get_metrics(self) -> dict:
        """Get circuit breaker metrics for observability."""
        return {
            "name": self.name,
            "state": self.state.value,
            "error_rate": round(self.error_rate(), 4),
            "window_calls": len(self._window),
            "backoff_multiplier": self.backoff_multiplier,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_blocked": self.total_blocked,
            "retry_after_seconds": self.get_retry_after_seconds(),
            "last_state_change": self.last_state_change.isoformat() if self.last_state_change else None,
        }


class CircuitBreakerRegistry:
    """Breakers keyed by name; one registry per pipeline instance."""

    def __init__(self, **defaults):
        self._defaults = defaults
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str, **kwargs) -> CircuitBreaker:
        """Get or create a circuit breaker by name."""
        if name not in self._breakers:
            options = {**self._defaults, **kwargs}
            self._breakers[name] = CircuitBreaker(name, **options)
        return self._breakers[name]

    def all(self) -> Dict[str, CircuitBreaker]:
        return self._breakers.copy()

    def get_metrics(self) -> Dict[str, dict]:
        return {name: breaker.get_metrics() for name, breaker in self._breakers.items()}
