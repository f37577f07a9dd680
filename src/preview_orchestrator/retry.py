"""
Async retry with exponential backoff for provisioning API calls.

Failures are classified before deciding whether to try again:
- network errors and 5xx responses are retried
- 408/429 are retried
- other 4xx responses fail fast
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TypeVar

import httpx
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class FailureType(Enum):
    NETWORK_ERROR = auto()
    SERVER_ERROR = auto()
    CLIENT_ERROR = auto()
    UNKNOWN_ERROR = auto()


class RetryOutcome(Enum):
    SUCCESS = auto()
    MAX_RETRIES_EXCEEDED = auto()
    NON_RETRIABLE_ERROR = auto()


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retriable_status_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({408, 429, 500, 502, 503, 504})
    )


@dataclass
class RetryMetrics:
    total_attempts: int = 0
    successful_retries: int = 0
    failed_retries: int = 0
    total_delay_time: float = 0.0


def _status_code(exception: Exception) -> int | None:
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code
    return getattr(exception, "status_code", None)


class AsyncRetryManager:
    """Runs a coroutine factory until it succeeds or the retry budget is spent."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self.metrics = RetryMetrics()
        self._sleep = sleep

    async def execute_with_retry(
        self, func: Callable[[], Awaitable[T]], operation_name: str = "operation"
    ) -> tuple[RetryOutcome, T | None, Exception | None]:
        """
        Execute an async callable with retries.

        Returns:
            Tuple of (outcome, result, final_exception)
        """
        last_exception: Exception | None = None

        for attempt in range(self.config.max_retries + 1):
            try:
                result = await func()
                if attempt > 0:
                    self.metrics.successful_retries += 1
                    logger.info("Operation succeeded after retry",
                                operation=operation_name, retries=attempt)
                return RetryOutcome.SUCCESS, result, None
            except Exception as e:
                last_exception = e
                failure_type = self.classify_failure(e)
                logger.warning("Operation attempt failed", operation=operation_name,
                               attempt=attempt + 1, failure=failure_type.name, error=str(e))

                if not self.is_retriable(failure_type, e):
                    self.metrics.failed_retries += 1
                    return RetryOutcome.NON_RETRIABLE_ERROR, None, e

                if attempt >= self.config.max_retries:
                    self.metrics.failed_retries += 1
                    logger.error("Operation failed after retries", operation=operation_name,
                                 retries=self.config.max_retries, error=str(e))
                    return RetryOutcome.MAX_RETRIES_EXCEEDED, None, e

                delay = self.calculate_delay(attempt)
                self.metrics.total_attempts += 1
                self.metrics.total_delay_time += delay
                await self._sleep(delay)

        self.metrics.failed_retries += 1
        return RetryOutcome.MAX_RETRIES_EXCEEDED, None, last_exception

    def classify_failure(self, exception: Exception) -> FailureType:
        if isinstance(exception, httpx.TransportError):
            return FailureType.NETWORK_ERROR
        status_code = _status_code(exception)
        if status_code is not None:
            if 500 <= status_code < 600:
                return FailureType.SERVER_ERROR
            if 400 <= status_code < 500:
                return FailureType.CLIENT_ERROR
        return FailureType.UNKNOWN_ERROR

    def is_retriable(self, failure_type: FailureType, exception: Exception) -> bool:
        if failure_type in (FailureType.NETWORK_ERROR, FailureType.SERVER_ERROR):
            return True
        if failure_type == FailureType.CLIENT_ERROR:
            return _status_code(exception) in self.config.retriable_status_codes
        # Unknown errors - be conservative and retry
        return True

    def calculate_delay(self, attempt: int) -> float:
        delay = self.config.base_delay * (self.config.backoff_multiplier**attempt)
        delay = min(delay, self.config.max_delay)
        if self.config.jitter:
            jitter_range = delay * 0.25
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))
        return delay
