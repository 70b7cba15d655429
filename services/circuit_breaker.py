"""
Circuit Breaker Pattern for Ledger Node Calls
Stops hammering an unreachable node and fails fast until it recovers
"""

import asyncio
import time
import logging
from typing import Any, Callable, Dict, Optional, Type
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenError(Exception):
    """Raised when a call is blocked by an open circuit"""
    pass


class CircuitBreaker:
    """
    In-process circuit breaker for a single ledger node connection

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many consecutive failures, requests blocked
    - HALF_OPEN: Testing recovery with limited requests

    Only `expected_exception` counts as a failure; node-side rejections of a
    transaction are answers, not outages, and must not trip the breaker.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        expected_exception: Type[BaseException] = Exception,
        half_open_successes: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.half_open_successes = half_open_successes
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._half_open_attempts = 0
        self._lock = asyncio.Lock()

        self.stats = {
            'total_calls': 0,
            'successful_calls': 0,
            'failed_calls': 0,
            'blocked_calls': 0
        }

    async def async_call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute async function with circuit breaker protection"""
        self.stats['total_calls'] += 1

        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitState.HALF_OPEN
                    self._half_open_attempts = 0
                    logger.info(f"Circuit {self.name} entering HALF_OPEN state")
                else:
                    self.stats['blocked_calls'] += 1
                    raise CircuitBreakerOpenError(
                        f"Circuit breaker {self.name} is OPEN. Service unavailable."
                    )

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt reset"""
        if self.last_failure_time is None:
            return True
        return (self._clock() - self.last_failure_time) >= self.recovery_timeout

    async def _on_success(self):
        async with self._lock:
            self.stats['successful_calls'] += 1
            if self.state == CircuitState.HALF_OPEN:
                self._half_open_attempts += 1
                if self._half_open_attempts >= self.half_open_successes:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    logger.info(f"✅ Circuit {self.name} CLOSED after recovery")
            else:
                self.failure_count = 0

    async def _on_failure(self):
        async with self._lock:
            self.stats['failed_calls'] += 1
            self.failure_count += 1
            self.last_failure_time = self._clock()

            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                logger.warning(f"⚠️ Circuit {self.name} re-OPENED during recovery probe")
            elif self.failure_count >= self.failure_threshold:
                self.state = CircuitState.OPEN
                logger.error(
                    f"🚨 Circuit {self.name} OPENED after {self.failure_count} consecutive failures"
                )

    def get_state(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            **self.stats,
        }

    def reset(self):
        """Force the circuit closed (admin / tests)"""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self._half_open_attempts = 0
