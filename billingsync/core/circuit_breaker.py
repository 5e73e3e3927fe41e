from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from billingsync.core.config import settings
from billingsync.core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerOptions:
    failure_threshold: int = 5
    timeout: float = 60.0  # seconds spent OPEN before a probe is allowed
    monitoring_period: float = 300.0  # seconds after the last failure before counters reset


@dataclass
class CircuitBreakerStats:
    failures: int = 0
    successes: int = 0
    requests: int = 0
    # monotonic clock readings; converted to wall time in get_stats()
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None


class CircuitBreaker:
    """Gate in front of an unreliable dependency.

    CLOSED passes calls through and counts failures. Reaching
    ``failure_threshold`` opens the circuit; while OPEN every call fails fast
    (or runs the fallback) without touching the dependency. Once ``timeout``
    seconds have passed since the last failure the next call is let through
    as a HALF_OPEN probe: one success closes the circuit, one failure opens
    it again. Only one probe is in flight at a time; concurrent callers are
    short-circuited as if the circuit were still OPEN.

    The breaker never retries. Callers that want retries wrap ``execute`` in
    ``RetryHandler.retry_with_backoff`` or queue a job.
    """

    def __init__(
        self,
        options: Optional[CircuitBreakerOptions] = None,
        *,
        name: str = "circuit",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options or CircuitBreakerOptions()
        self.name = name
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.stats = CircuitBreakerStats()
        self._probe_in_flight = False

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], Awaitable[T]]] = None,
    ) -> T:
        self._check_for_state_transition()

        if self.state == CircuitState.OPEN or (self.state == CircuitState.HALF_OPEN and self._probe_in_flight):
            if fallback is not None:
                logger.info(f"⚡ Circuit breaker '{self.name}' OPEN, executing fallback")
                return await fallback()
            raise CircuitOpenError(self.name)

        is_probe = self.state == CircuitState.HALF_OPEN
        if is_probe:
            self._probe_in_flight = True
        self.stats.requests += 1

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        finally:
            if is_probe:
                self._probe_in_flight = False

        self._on_success()
        return result

    def _on_success(self) -> None:
        self.stats.successes += 1
        self.stats.last_success_time = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"✅ Circuit breaker '{self.name}': probe succeeded in HALF_OPEN, transitioning to CLOSED")
            self.state = CircuitState.CLOSED
            self._reset_stats()

    def _on_failure(self) -> None:
        self.stats.failures += 1
        self.stats.last_failure_time = self._clock()

        if self.state == CircuitState.CLOSED and self.stats.failures >= self.options.failure_threshold:
            logger.warning(
                f"🔴 Circuit breaker '{self.name}': failure threshold "
                f"({self.options.failure_threshold}) reached, transitioning to OPEN"
            )
            self.state = CircuitState.OPEN
        elif self.state == CircuitState.HALF_OPEN:
            logger.warning(f"🔴 Circuit breaker '{self.name}': probe failed in HALF_OPEN, transitioning back to OPEN")
            self.state = CircuitState.OPEN

    def _check_for_state_transition(self) -> None:
        last_failure = self.stats.last_failure_time
        elapsed = None if last_failure is None else self._clock() - last_failure

        # an OPEN circuit whose counters were already reset has nothing left to wait for
        if self.state == CircuitState.OPEN and (elapsed is None or elapsed >= self.options.timeout):
            logger.info(f"🟡 Circuit breaker '{self.name}': timeout elapsed, transitioning to HALF_OPEN")
            self.state = CircuitState.HALF_OPEN

        if elapsed is not None and elapsed >= self.options.monitoring_period:
            self._reset_stats()

    def _reset_stats(self) -> None:
        self.stats = CircuitBreakerStats()

    def get_state(self) -> CircuitState:
        return self.state

    def get_stats(self) -> Dict[str, Any]:
        """Counters and timestamps for the ops surface (timestamps as ISO strings)"""
        data = asdict(self.stats)
        data["last_failure_time"] = self._to_wall_time(self.stats.last_failure_time)
        data["last_success_time"] = self._to_wall_time(self.stats.last_success_time)
        data["state"] = self.state.value
        data["name"] = self.name
        return data

    def reset(self) -> None:
        """Manual operator override back to CLOSED"""
        self.state = CircuitState.CLOSED
        self._probe_in_flight = False
        self._reset_stats()
        logger.info(f"🔄 Circuit breaker '{self.name}' manually reset to CLOSED state")

    def _to_wall_time(self, reading: Optional[float]) -> Optional[str]:
        if reading is None:
            return None
        offset = self._clock() - reading
        return datetime.fromtimestamp(time.time() - offset, tz=timezone.utc).isoformat()


def build_razorpay_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        CircuitBreakerOptions(
            failure_threshold=settings.razorpay_breaker_failure_threshold,
            timeout=settings.razorpay_breaker_timeout,
            monitoring_period=settings.razorpay_breaker_monitoring_period,
        ),
        name="razorpay",
    )


def build_database_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        CircuitBreakerOptions(
            failure_threshold=settings.database_breaker_failure_threshold,
            timeout=settings.database_breaker_timeout,
            monitoring_period=settings.database_breaker_monitoring_period,
        ),
        name="database",
    )
