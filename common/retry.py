"""
Retry helpers for outbound deliveries
"""
import asyncio
from typing import Awaitable, Callable, Any, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

class RetryConfig:
    """Initial attempt plus `max_retries` retries with linear backoff"""
    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        retry_on: Tuple[type, ...] = (Exception,),
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.retry_on = retry_on
        self.sleep = sleep or asyncio.sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Wait after the given failed attempt (1-based): attempt * base_delay"""
    return config.base_delay * attempt

async def retry_async(func: Callable[[], Awaitable[Any]], config: RetryConfig, label: str = "call") -> Any:
    """Await func until it succeeds; re-raises the last retryable error once attempts run out"""
    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func()
        except config.retry_on as e:
            if attempt == config.max_attempts:
                logger.error(f"Giving up on {label} after {attempt} attempts: {e}")
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(f"🔄 {label} attempt {attempt}/{config.max_attempts} failed: {e}. Retrying in {delay:.2f}s")
            await config.sleep(delay)
