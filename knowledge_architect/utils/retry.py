"""
Rate-limit-aware retry for provider calls.

Only rate-limit failures are retried. Everything else (bad credentials, an
unreachable local server, malformed responses) fails on the first attempt so
the user sees the real problem immediately.

Policy:
    - at most ``max_attempts`` attempts (default 3)
    - waits ``base_delay * 2 ** (n - 1)`` seconds after failed attempt n
      (2s, then 4s), never after the last attempt
    - the last error is re-raised unchanged once attempts are exhausted
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from knowledge_architect.utils.logger import get_logger

if TYPE_CHECKING:
    from knowledge_architect.config.settings import Settings
    from knowledge_architect.utils.observability import ObservabilityContext

T = TypeVar("T")

logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 2.0

RATE_LIMIT_MARKERS = ("rate limit", "resource_exhausted", "429")


def is_rate_limit_error(error: BaseException) -> bool:
    """True when the error signals provider rate limiting."""
    if getattr(error, "status_code", None) == 429:
        return True
    text = str(error).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


# =============================================================================
# Retry Executor
# =============================================================================

class RetryExecutor:
    """
    Runs an async operation under the rate-limit retry policy.

    Example:
        >>> executor = RetryExecutor()
        >>> text = await executor.execute(
        ...     lambda: provider.generate_text(prompt, 0.6, ModelTier.FAST),
        ...     label="Stage: synthesizer",
        ... )
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        observability: Optional["ObservabilityContext"] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self.observability = observability

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "RetryExecutor":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            **kwargs,
        )

    @property
    def _logger(self):
        return self.observability.logger if self.observability else logger

    def delay_for(self, attempt_number: int) -> float:
        """Seconds to wait after failed attempt ``attempt_number`` (1-based)."""
        return self.base_delay * 2 ** (attempt_number - 1)

    def _log_failure(self, label: str, attempt: int, error: BaseException) -> None:
        # Logging must never mask the original error.
        with contextlib.suppress(Exception):
            will_retry = attempt < self.max_attempts and is_rate_limit_error(error)
            self._logger.warning(
                "Attempt failed",
                label=label,
                attempt=attempt,
                max_attempts=self.max_attempts,
                will_retry=will_retry,
                error=str(error),
                error_type=type(error).__name__,
            )
            if self.observability:
                self.observability.collector.warn(
                    f"{label} failed on attempt {attempt}/{self.max_attempts}",
                    "retry",
                    label,
                    error=str(error),
                    will_retry=will_retry,
                )

    def _log_backoff(self, label: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            with contextlib.suppress(Exception):
                self._logger.info(
                    "Rate limited, backing off",
                    label=label,
                    attempt=retry_state.attempt_number,
                    wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                )
        return before_sleep

    async def execute(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        """
        Run ``operation`` with retries on rate-limit errors.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt.
            label: Human-readable label used in logs.

        Raises:
            The last error raised by ``operation``.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2),
            retry=retry_if_exception(is_rate_limit_error),
            before_sleep=self._log_backoff(label),
            sleep=self._sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                try:
                    return await operation()
                except Exception as e:
                    self._log_failure(label, attempt.retry_state.attempt_number, e)
                    raise

        raise RuntimeError(f"{label}: retry loop exited without a result")  # pragma: no cover

    async def execute_stream(
        self,
        factory: Callable[[], AsyncIterator[str]],
        label: str,
    ) -> AsyncIterator[str]:
        """
        Stream from ``factory`` under the same policy.

        A failed stream is only retried while no chunk has been delivered;
        once text has reached the caller the error is re-raised as is.
        """
        attempt = 0
        while True:
            attempt += 1
            delivered = False
            try:
                async for chunk in factory():
                    delivered = True
                    yield chunk
                return
            except Exception as e:
                self._log_failure(label, attempt, e)
                if delivered or attempt >= self.max_attempts or not is_rate_limit_error(e):
                    raise
                delay = self.delay_for(attempt)
                self._logger.info(
                    "Rate limited, backing off",
                    label=label,
                    attempt=attempt,
                    wait_seconds=delay,
                )
                await self._sleep(delay)


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_BASE_DELAY_SECONDS",
    "RATE_LIMIT_MARKERS",
    "is_rate_limit_error",
    "RetryExecutor",
]
