"""
Circuit breaker guarding the outbound mobile-money provider calls
"""
import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Any, Dict, Iterable
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"        # Provider reachable
    OPEN = "OPEN"            # Failing fast, no provider call
    HALF_OPEN = "HALF_OPEN"  # Letting trial calls through

@dataclass
class CircuitBreakerConfig:
    """Thresholds for one provider"""
    failure_threshold: int = 5   # Consecutive failures before opening
    reset_timeout: float = 30.0  # Seconds open before a trial call
    success_threshold: int = 2   # Trial successes needed to close
    timeout: float = 15.0        # Per-call provider timeout

class CircuitBreakerException(Exception):
    """Raised instead of calling a provider whose breaker is open"""
    pass

class CircuitBreaker:
    """Tracks one provider's health. Timeouts count as failures."""

    def __init__(self, name: str, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.config = config
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = 0.0

    def _move_to(self, state: CircuitState):
        if state == self.state:
            return
        logger.warning(f"⚡ Provider breaker {self.name}: {self.state.value} -> {state.value}")
        self.state = state
        self.success_count = 0
        if state == CircuitState.OPEN:
            self.opened_at = self.clock()
        elif state == CircuitState.CLOSED:
            self.failure_count = 0

    def allows_call(self) -> bool:
        if self.state == CircuitState.OPEN and self.clock() - self.opened_at >= self.config.reset_timeout:
            self._move_to(CircuitState.HALF_OPEN)
        return self.state != CircuitState.OPEN

    def record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._move_to(CircuitState.CLOSED)
        else:
            self.failure_count = 0

    def record_failure(self):
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            self._move_to(CircuitState.OPEN)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await a provider coroutine under the breaker and the per-call timeout.
        A timeout surfaces as asyncio.TimeoutError."""
        if not self.allows_call():
            raise CircuitBreakerException(f"Payment provider {self.name} is unavailable (circuit open)")

        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

def build_gateway_breakers(methods: Iterable[str], timeout: float) -> Dict[str, CircuitBreaker]:
    """One breaker per payment method so a failing provider never trips the other"""
    return {method: CircuitBreaker(method, CircuitBreakerConfig(timeout=timeout)) for method in methods}
