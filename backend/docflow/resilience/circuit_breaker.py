"""
Circuit Breaker  —  Per-Dependency Fail-Fast State Machine
══════════════════════════════════════════════════════════════

States:
  closed     calls pass; a terminal failure bumps the consecutive-failure
             counter, a success resets it to 0
  open       calls are rejected immediately for `timeout` seconds measured
             from the moment the breaker opened
  half_open  entered lazily once the open timeout has elapsed; exactly ONE
             trial call is admitted, concurrent callers are rejected until
             the trial settles

Transitions:
  closed    → open       failures reach `threshold`
  half_open → closed     trial succeeded
  half_open → open       trial failed (open timer restarts)

Concurrency:
  Breakers are shared by every job that talks to the same dependency. All
  reads and writes of the counters go through a single asyncio.Lock, so two
  jobs cannot both observe "half_open, no trial running" and both proceed.

Permit protocol (used by ResilientCaller):

    await breaker.acquire()            # raises CircuitOpenError
    try:
        result = await call()
    except TransientDependencyError:
        await breaker.record_failure()
        raise
    except Exception:
        await breaker.release()        # outcome says nothing about health
        raise
    else:
        await breaker.record_success()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from docflow.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED    = "closed"
    OPEN      = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitSnapshot:
    name:      str
    state:     CircuitState
    failures:  int
    opened_at: Optional[float]   # clock() reading when the breaker last opened


class CircuitBreaker:
    def __init__(
        self,
        name:      str,
        threshold: int,
        timeout:   float,                 # seconds
        clock:     Clock = time.monotonic,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.name       = name
        self._threshold = threshold
        self._timeout   = timeout
        self._clock     = clock
        self._lock      = asyncio.Lock()

        self._state:     CircuitState    = CircuitState.CLOSED
        self._failures:  int             = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    # ------------------------------------------------------------------
    # Permit handling
    # ------------------------------------------------------------------

    async def acquire(self) -> None:
        """Admit one call or raise CircuitOpenError without touching the dependency."""
        async with self._lock:
            self._maybe_half_open()

            if self._state is CircuitState.OPEN:
                raise CircuitOpenError(self.name, retry_in=self._remaining_open())

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, retry_in=0.0)
                self._trial_in_flight = True
                logger.info("Circuit breaker | dependency=%s trial call admitted", self.name)

    async def ensure_closed(self) -> None:
        """
        Re-check between retry attempts of an already admitted call.

        Raises CircuitOpenError when another caller has opened the breaker
        since this call was admitted.
        """
        async with self._lock:
            if self._state is CircuitState.OPEN and self._remaining_open() > 0:
                raise CircuitOpenError(self.name, retry_in=self._remaining_open())

    async def record_success(self) -> None:
        async with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.warning(
                    "Circuit breaker | dependency=%s %s -> closed",
                    self.name, self._state.value,
                )
            self._state           = CircuitState.CLOSED
            self._failures        = 0
            self._opened_at       = None
            self._trial_in_flight = False

    async def record_failure(self) -> None:
        async with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._open(reason="trial failed")
                return

            self._failures += 1
            if self._state is CircuitState.CLOSED and self._failures >= self._threshold:
                self._open(reason=f"failures={self._failures}")

    async def release(self) -> None:
        """Give back a permit without changing health counters."""
        async with self._lock:
            self._trial_in_flight = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current state as a caller would observe it (open → half_open once elapsed)."""
        if self._state is CircuitState.OPEN and self._remaining_open() <= 0:
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            name=self.name,
            state=self.state,
            failures=self._failures,
            opened_at=self._opened_at,
        )

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _open(self, reason: str) -> None:
        self._state           = CircuitState.OPEN
        self._opened_at       = self._clock()
        self._trial_in_flight = False
        logger.warning(
            "Circuit breaker | dependency=%s opened (%s) open_for=%.0fs",
            self.name, reason, self._timeout,
        )

    def _remaining_open(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self._timeout - self._clock())

    def _maybe_half_open(self) -> None:
        if self._state is CircuitState.OPEN and self._remaining_open() <= 0:
            self._state           = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker | dependency=%s open -> half_open", self.name)


class CircuitBreakerRegistry:
    """
    One breaker per dependency name, created on first use.

    Owned by the application container and handed to every ResilientCaller,
    so "embeddings" failures in one job are visible to every other job.
    """

    def __init__(
        self,
        threshold: int,
        timeout:   float,
        clock:     Clock = time.monotonic,
    ) -> None:
        self._threshold = threshold
        self._timeout   = timeout
        self._clock     = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings, clock: Clock = time.monotonic) -> "CircuitBreakerRegistry":
        return cls(
            threshold=settings.circuit_breaker_threshold,
            timeout=settings.circuit_breaker_timeout / 1000,
            clock=clock,
        )

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self._threshold, self._timeout, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    def snapshots(self) -> list[CircuitSnapshot]:
        return [b.snapshot() for b in self._breakers.values()]
