"""
Retry/Backoff Policy

Wraps one task execution in a bounded attempt loop built on tenacity. The
wait after failed attempt k is ``min(max_delay, base_delay * 2 ** (k - 1))``:
with the defaults that is 1 s, then 2 s, capped at 30 s.

The policy never raises: when every attempt fails it returns an
``AttemptOutcome`` carrying the last error, and the scheduler logs it and waits
for the next tick.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class AttemptOutcome(Generic[T]):
    """Result of a retried call."""

    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")

    def delay_for(self, failed_attempt: int) -> float:
        """Seconds to wait after ``failed_attempt`` (1-based) before the next one."""
        return min(self.max_delay, self.base_delay * 2 ** (failed_attempt - 1))

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        name: str = "task",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> AttemptOutcome[T]:
        """
        Call ``fn`` until it succeeds or the attempts are exhausted.

        Args:
            fn: Zero-argument coroutine function, one attempt per call
            name: Label for log lines
            sleep: Awaitable sleep, injectable for tests

        Returns:
            AttemptOutcome with either the value or the last error
        """
        outcome: AttemptOutcome[T] = AttemptOutcome()

        def before_sleep(state: RetryCallState) -> None:
            wait = state.next_action.sleep if state.next_action else 0.0
            outcome.delays.append(wait)
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "%s attempt %d/%d failed: %s; retrying in %.0fms",
                name, state.attempt_number, self.attempts, error, wait * 1000,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, min=0, max=self.max_delay),
            retry=retry_if_exception_type(Exception),
            before_sleep=before_sleep,
            sleep=sleep,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    outcome.attempts = attempt.retry_state.attempt_number
                    outcome.value = await fn()
        except RetryError as e:
            outcome.error = e.last_attempt.exception()
            logger.error("%s failed after %d attempts: %s", name, self.attempts, outcome.error)

        return outcome
