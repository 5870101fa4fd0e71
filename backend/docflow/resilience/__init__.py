"""
Resilience Package

Retry with exponential backoff, soft/hard call timeouts and per-dependency
circuit breakers for every outbound call the pipeline makes.

Public API::

    from docflow.resilience import CircuitBreakerRegistry, ResilientCaller

    registry = CircuitBreakerRegistry.from_settings(settings)
    caller   = ResilientCaller(
        breaker=registry.get("embeddings"),
        policy=settings.retry_policy,
        soft_timeout=30.0,
        hard_timeout=45.0,
    )
    result = await caller.call(lambda: provider.embed_batch(texts))
"""

from docflow.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitSnapshot,
    CircuitState,
)
from docflow.resilience.retry import (
    ResilientCaller,
    RetryAttempt,
    RetryPolicy,
    call_with_timeouts,
    compute_backoff,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitSnapshot",
    "CircuitState",
    "ResilientCaller",
    "RetryAttempt",
    "RetryPolicy",
    "call_with_timeouts",
    "compute_backoff",
]
