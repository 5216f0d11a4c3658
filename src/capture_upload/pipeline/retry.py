"""Retry sequencing with exponential backoff and jitter."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception

from capture_upload.core.config import Settings
from capture_upload.exceptions import UploadCancelledError, UploadError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryablePredicate = Callable[[BaseException], bool]


def default_retryable(error: BaseException) -> bool:
    """Retry whatever the raising component marked as transient."""
    if isinstance(error, UploadCancelledError):
        return False
    return isinstance(error, UploadError) and error.retryable


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


class RetryController:
    """Decides whether and when a failed operation runs again.

    The controller is policy-free: callers pass the predicate that separates
    transient failures from fatal ones. It only enforces the attempt cap and
    spaces attempts by ``min(base * 2**(attempt-1), max_delay)`` plus a
    uniform jitter in ``[0, max_jitter]``.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_jitter: float = 1.0,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_jitter = max_jitter
        self._rng = rng or random.Random()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "RetryController":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            max_jitter=settings.RETRY_MAX_JITTER_SECONDS,
            **kwargs,
        )

    def backoff(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        if self.max_jitter > 0:
            delay += self._rng.uniform(0, self.max_jitter)
        return delay

    def decide(
        self,
        error: BaseException,
        attempt: int,
        retryable: RetryablePredicate = default_retryable,
    ) -> RetryDecision:
        """Return retry-after(delay) or fail-fatal for a failed attempt."""
        if attempt >= self.max_attempts or not retryable(error):
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay=self.backoff(attempt))

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        *,
        retryable: RetryablePredicate = default_retryable,
        on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
        description: str = "operation",
    ) -> tuple[T, int]:
        """Run ``operation`` until it succeeds, fails fatally or runs out of attempts.

        Args:
            operation: Coroutine function receiving the 1-based attempt number
            retryable: Classifies a failure as transient
            on_retry: Called with (error, failed attempt, delay) before sleeping
            is_cancelled: Checked before every attempt; a set flag stops the loop
            description: Label used in log messages

        Returns:
            Tuple of (result, number of attempts made)

        Raises:
            The last error, with ``attempts`` set when it is an UploadError
        """
        attempts = 0

        def should_retry(error: BaseException) -> bool:
            if is_cancelled is not None and is_cancelled():
                return False
            return retryable(error)

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"{description} failed (attempt {retry_state.attempt_number}/{self.max_attempts}), retrying",
                extra={
                    "attempt": retry_state.attempt_number,
                    "max_attempts": self.max_attempts,
                    "delay_seconds": round(delay, 3),
                    "error": str(error),
                },
            )
            if on_retry is not None:
                on_retry(error, retry_state.attempt_number, delay)

        retrying = AsyncRetrying(
            stop=lambda retry_state: retry_state.attempt_number >= self.max_attempts,
            wait=lambda retry_state: self.backoff(retry_state.attempt_number),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if is_cancelled is not None and is_cancelled():
                        raise UploadCancelledError()
                    result = await operation(attempts)
        except UploadError as exc:
            exc.attempts = attempts
            raise

        return result, attempts
