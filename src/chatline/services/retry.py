from __future__ import annotations

"""Sequential retry with exponential backoff for upstream calls.

A ``RetryPolicy`` describes the attempt cap and the wait schedule;
``run_with_retry`` executes an async attempt function under it and records
one tagged ``AttemptResult`` per try. Only exceptions listed in
``retry_on`` count as attempt failures; anything else propagates at once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def delays(self) -> List[float]:
        """Waits between attempts; one fewer than ``max_attempts``."""
        out: List[float] = []
        delay = self.initial_delay
        for _ in range(max(0, self.max_attempts - 1)):
            out.append(delay)
            delay *= self.backoff_multiplier
        return out


@dataclass
class AttemptResult(Generic[T]):
    attempt: int
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None


@dataclass
class RetryOutcome(Generic[T]):
    attempts: List[AttemptResult[T]] = field(default_factory=list)
    waited: float = 0.0

    @property
    def succeeded(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].ok

    @property
    def value(self) -> Optional[T]:
        return self.attempts[-1].value if self.succeeded else None

    @property
    def last_error(self) -> Optional[BaseException]:
        for result in reversed(self.attempts):
            if result.error is not None:
                return result.error
        return None


async def run_with_retry(
    attempt_fn: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_failure: Optional[Callable[[AttemptResult[T]], None]] = None,
) -> RetryOutcome[T]:
    """Run ``attempt_fn(attempt_number)`` until it succeeds or the cap is hit."""

    outcome: RetryOutcome[T] = RetryOutcome()
    delays = policy.delays()
    for attempt in range(1, policy.max_attempts + 1):
        try:
            value = await attempt_fn(attempt)
        except retry_on as exc:
            result: AttemptResult[T] = AttemptResult(attempt=attempt, ok=False, error=exc)
            outcome.attempts.append(result)
            if on_failure is not None:
                on_failure(result)
            if attempt >= policy.max_attempts:
                break
            delay = delays[attempt - 1]
            logger.debug("retry_backoff", extra={"attempt": attempt, "delay_s": delay})
            await sleep(delay)
            outcome.waited += delay
            continue
        outcome.attempts.append(AttemptResult(attempt=attempt, ok=True, value=value))
        break
    return outcome
