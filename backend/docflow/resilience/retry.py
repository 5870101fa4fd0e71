"""
Resilient Caller  —  Retry, Timeouts & Circuit Breaking for Outbound Calls
══════════════════════════════════════════════════════════════════════════

Every outbound dependency call in the pipeline (embedding batches, AI
abstracts) goes through ResilientCaller.call():

  1. breaker.acquire()          open breaker → CircuitOpenError, no call made
  2. call_with_timeouts()       soft timeout → warning, hard timeout → cancel
                                and DependencyTimeoutError
  3. classify_error()           transient → back off and retry
                                permanent → raise immediately, no retry
  4. terminal outcome           success   → breaker.record_success()
                                exhausted → breaker.record_failure() (once)

Backoff policy (per retry n = 1, 2, …):
  delay = min(initial_delay × multiplier^(n-1), max_delay)
  jitter enabled → wait uniform(0, delay)   ("full jitter")

Attempts = max_retries + 1. Worst-case total wait is the sum of the capped
delays; jitter only ever shortens it.

Clock, sleep and RNG are injectable so tests run without real waiting.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from docflow.core.errors import (
    DependencyTimeoutError,
    classify_error,
)
from docflow.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Policy & attempt records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_retries:   int   = 3
    initial_delay: float = 1.0     # seconds
    max_delay:     float = 10.0    # seconds
    multiplier:    float = 2.0
    jitter:        bool  = True

    @property
    def max_attempts(self) -> int:
        return max(self.max_retries, 0) + 1

    def worst_case_wait(self) -> float:
        """Upper bound on total backoff across all retries of one call."""
        return sum(
            compute_backoff(n, self, rng=None) for n in range(1, self.max_retries + 1)
        )


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int              # 1-based
    delay:   float            # seconds waited before this attempt
    outcome: str              # "success" | "retryable" | "permanent" | "exhausted"
    error:   Optional[str] = None


def compute_backoff(
    retry_number: int,
    policy:       RetryPolicy,
    rng:          Optional[Callable[[], float]] = random.random,
) -> float:
    """
    Delay before retry `retry_number` (1-based).

    With jitter enabled and an rng supplied, returns a value in
    [0, capped_delay]. Passing rng=None yields the un-jittered cap.
    """
    delay = policy.initial_delay * (policy.multiplier ** (retry_number - 1))
    delay = min(delay, policy.max_delay)
    if policy.jitter and rng is not None:
        delay = rng() * delay
    return delay


# ---------------------------------------------------------------------------
# Soft / hard timeouts
# ---------------------------------------------------------------------------

async def call_with_timeouts(
    fn:           Callable[[], Awaitable[T]],
    soft_timeout: float,
    hard_timeout: float,
    operation:    str = "call",
    dependency:   str = "",
) -> T:
    """
    Await fn() under two budgets.

    soft_timeout: the call is logged as slow but still awaited.
    hard_timeout: the call is cancelled and DependencyTimeoutError raised.
    """
    task = asyncio.ensure_future(fn())
    try:
        done, _ = await asyncio.wait({task}, timeout=soft_timeout)
        if not done:
            logger.warning(
                "Slow call | dependency=%s op=%s exceeded soft_timeout=%.1fs",
                dependency, operation, soft_timeout,
            )
            done, _ = await asyncio.wait({task}, timeout=max(0.0, hard_timeout - soft_timeout))
        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise DependencyTimeoutError(
                f"{operation} timed out after {hard_timeout:.1f}s",
                dependency=dependency,
            )
        return task.result()
    except asyncio.CancelledError:
        task.cancel()
        raise


# ---------------------------------------------------------------------------
# ResilientCaller
# ---------------------------------------------------------------------------

class ResilientCaller:
    """
    Retry + circuit breaker wrapper bound to one dependency.

    Usage::

        caller = ResilientCaller(
            breaker=registry.get("embeddings"),
            policy=settings.retry_policy,
            soft_timeout=30.0,
            hard_timeout=45.0,
        )
        vectors = await caller.call(lambda: provider.embed_batch(texts), operation="batch 3")
    """

    def __init__(
        self,
        breaker:      CircuitBreaker,
        policy:       RetryPolicy,
        soft_timeout: float,
        hard_timeout: float,
        sleep:        Sleep = asyncio.sleep,
        rng:          Callable[[], float] = random.random,
    ) -> None:
        if hard_timeout <= soft_timeout:
            raise ValueError("hard_timeout must be greater than soft_timeout")
        self._breaker      = breaker
        self._policy       = policy
        self._soft_timeout = soft_timeout
        self._hard_timeout = hard_timeout
        self._sleep        = sleep
        self._rng          = rng

    @property
    def dependency(self) -> str:
        return self._breaker.name

    async def call(
        self,
        fn:        Callable[[], Awaitable[T]],
        operation: str = "call",
        history:   Optional[list[RetryAttempt]] = None,
    ) -> T:
        """
        Run fn() with the full resilience policy.

        Raises:
            CircuitOpenError:          breaker rejected the call
            PermanentDependencyError:  non-retryable failure (no retries spent)
            TransientDependencyError:  all attempts exhausted
        """
        if history is None:
            history = []
        dependency = self._breaker.name

        await self._breaker.acquire()
        settled = False
        try:
            waited = 0.0
            t0 = time.monotonic()

            for attempt in range(1, self._policy.max_attempts + 1):
                if attempt > 1:
                    await self._breaker.ensure_closed()

                try:
                    result = await call_with_timeouts(
                        fn,
                        self._soft_timeout,
                        self._hard_timeout,
                        operation=operation,
                        dependency=dependency,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    error = classify_error(exc, dependency=dependency)

                    if not error.retryable:
                        history.append(RetryAttempt(attempt, waited, "permanent", str(error)))
                        logger.error(
                            "Non-retryable failure | dependency=%s op=%s attempt=%d error=%s",
                            dependency, operation, attempt, error,
                        )
                        if error is exc:
                            raise
                        raise error from exc

                    if attempt == self._policy.max_attempts:
                        history.append(RetryAttempt(attempt, waited, "exhausted", str(error)))
                        await self._breaker.record_failure()
                        settled = True
                        logger.error(
                            "Retries exhausted | dependency=%s op=%s attempts=%d error=%s",
                            dependency, operation, attempt, error,
                        )
                        if error is exc:
                            raise
                        raise error from exc

                    history.append(RetryAttempt(attempt, waited, "retryable", str(error)))
                    waited = compute_backoff(attempt, self._policy, self._rng)
                    logger.warning(
                        "Retrying | dependency=%s op=%s attempt=%d/%d delay=%.2fs error=%s",
                        dependency, operation, attempt, self._policy.max_attempts,
                        waited, error,
                    )
                    await self._sleep(waited)
                else:
                    history.append(RetryAttempt(attempt, waited, "success"))
                    await self._breaker.record_success()
                    settled = True
                    if attempt > 1:
                        logger.info(
                            "Recovered | dependency=%s op=%s attempts=%d elapsed_ms=%.0f",
                            dependency, operation, attempt, (time.monotonic() - t0) * 1000,
                        )
                    return result
        finally:
            if not settled:
                await self._breaker.release()
