"""
Circuit breaker used around the price oracle.
"""

import asyncio
import time
from enum import Enum
from typing import Optional, Callable, Any, Tuple, Type

from core.logging import get_market_data_logger_safe
from core.utils.exceptions import CircuitOpenError


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Circuit tripped, failing fast
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Circuit breaker for upstream resilience"""

    def __init__(
        self,
        name: str = "upstream",
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Tuple[Type[BaseException], ...] = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED

        self.logger = get_market_data_logger_safe("circuit_breaker")

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute func(*args, **kwargs) with circuit breaker protection"""

        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                self.logger.info("Circuit breaker moving to HALF_OPEN", breaker=self.name)
            else:
                raise CircuitOpenError(f"Circuit breaker '{self.name}' is OPEN - failing fast")

        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except self.expected_exception:
            self._record_failure()
            raise

        if self.state == CircuitState.HALF_OPEN:
            self.logger.info("Circuit breaker reset to CLOSED - upstream recovered", breaker=self.name)
        self._reset()
        return result

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt reset"""
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time >= self.recovery_timeout

    def _record_failure(self):
        """Record a failure and potentially trip the circuit"""
        self.failure_count += 1
        self.last_failure_time = self._clock()

        # A failed probe re-opens immediately
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                self.logger.error(
                    "Circuit breaker TRIPPED",
                    breaker=self.name,
                    failures=self.failure_count,
                    recovery_timeout=self.recovery_timeout,
                )
            self.state = CircuitState.OPEN

    def _reset(self):
        """Reset circuit breaker to normal operation"""
        self.failure_count = 0
        self.last_failure_time = None
        self.state = CircuitState.CLOSED
