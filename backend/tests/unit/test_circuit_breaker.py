"""
Unit Tests — CircuitBreaker
════════════════════════════
Coverage targets:
  ✅ Opens after `threshold` consecutive failures
  ✅ Open breaker rejects without invoking the dependency
  ✅ Success resets the failure counter
  ✅ half_open after the timeout; trial success closes, trial failure re-opens
  ✅ Exactly one trial admitted under concurrency
  ✅ Released permits free the trial slot without changing health
  ✅ Registry shares one breaker per dependency name
"""

from __future__ import annotations

import asyncio

import pytest

from docflow.core.errors import CircuitOpenError
from docflow.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)


@pytest.fixture
def breaker(fake_clock) -> CircuitBreaker:
    return CircuitBreaker("embeddings", threshold=3, timeout=60.0, clock=fake_clock)


async def _fail(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        await breaker.acquire()
        await breaker.record_failure()


@pytest.mark.unit
@pytest.mark.resilience
class TestCircuitBreakerTransitions:

    async def test_starts_closed(self, breaker):
        assert breaker.state is CircuitState.CLOSED
        await breaker.acquire()

    async def test_opens_at_threshold(self, breaker):
        await _fail(breaker, 2)
        assert breaker.state is CircuitState.CLOSED
        await _fail(breaker, 1)
        assert breaker.state is CircuitState.OPEN

    async def test_open_breaker_rejects_fast(self, breaker):
        await _fail(breaker, 3)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.acquire()
        assert exc_info.value.dependency == "embeddings"
        assert exc_info.value.retry_in == pytest.approx(60.0)

    async def test_success_resets_failures(self, breaker):
        await _fail(breaker, 2)
        await breaker.acquire()
        await breaker.record_success()
        assert breaker.failures == 0
        await _fail(breaker, 2)
        assert breaker.state is CircuitState.CLOSED

    async def test_half_open_after_timeout(self, breaker, fake_clock):
        await _fail(breaker, 3)
        fake_clock.advance(59.9)
        assert breaker.state is CircuitState.OPEN
        fake_clock.advance(0.2)
        assert breaker.state is CircuitState.HALF_OPEN

    async def test_trial_success_closes(self, breaker, fake_clock):
        await _fail(breaker, 3)
        fake_clock.advance(61)
        await breaker.acquire()
        await breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failures == 0

    async def test_trial_failure_reopens_with_fresh_timer(self, breaker, fake_clock):
        await _fail(breaker, 3)
        fake_clock.advance(61)
        await breaker.acquire()
        await breaker.record_failure()
        assert breaker.state is CircuitState.OPEN

        fake_clock.advance(30)
        with pytest.raises(CircuitOpenError):
            await breaker.acquire()
        fake_clock.advance(31)
        assert breaker.state is CircuitState.HALF_OPEN


@pytest.mark.unit
@pytest.mark.resilience
class TestHalfOpenTrial:

    async def test_single_trial_under_concurrency(self, breaker, fake_clock):
        await _fail(breaker, 3)
        fake_clock.advance(61)

        results = await asyncio.gather(
            *(breaker.acquire() for _ in range(10)),
            return_exceptions=True,
        )
        admitted = [r for r in results if r is None]
        rejected = [r for r in results if isinstance(r, CircuitOpenError)]
        assert len(admitted) == 1
        assert len(rejected) == 9

    async def test_release_frees_trial_slot(self, breaker, fake_clock):
        await _fail(breaker, 3)
        fake_clock.advance(61)
        await breaker.acquire()
        with pytest.raises(CircuitOpenError):
            await breaker.acquire()

        await breaker.release()
        await breaker.acquire()
        assert breaker.state is CircuitState.HALF_OPEN

    async def test_ensure_closed_detects_open(self, breaker):
        await breaker.acquire()
        await breaker.ensure_closed()
        await _fail(breaker, 3)
        with pytest.raises(CircuitOpenError):
            await breaker.ensure_closed()


@pytest.mark.unit
@pytest.mark.resilience
class TestCircuitBreakerRegistry:

    def test_one_breaker_per_name(self, fake_clock):
        registry = CircuitBreakerRegistry(threshold=2, timeout=10, clock=fake_clock)
        assert registry.get("embeddings") is registry.get("embeddings")
        assert registry.get("embeddings") is not registry.get("ai_abstract")

    async def test_snapshots(self, fake_clock):
        registry = CircuitBreakerRegistry(threshold=1, timeout=10, clock=fake_clock)
        b = registry.get("embeddings")
        await b.acquire()
        await b.record_failure()
        registry.get("ai_abstract")

        snaps = {s.name: s for s in registry.snapshots()}
        assert snaps["embeddings"].state is CircuitState.OPEN
        assert snaps["embeddings"].opened_at == fake_clock.now
        assert snaps["ai_abstract"].state is CircuitState.CLOSED

    def test_from_settings_converts_ms(self, test_settings):
        registry = CircuitBreakerRegistry.from_settings(test_settings)
        breaker = registry.get("embeddings")
        assert breaker._timeout == pytest.approx(test_settings.circuit_breaker_timeout / 1000)
        assert breaker._threshold == test_settings.circuit_breaker_threshold

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreaker("x", threshold=0, timeout=1)
