"""
Unit Tests — EmbeddingBatcher
══════════════════════════════
Coverage targets:
  ✅ 450 chunks, batch_size=200 → batches of 200, 200, 50 in index order
  ✅ base delay applied between batches only (two delays for three batches)
  ✅ vectors aligned 1:1 with chunks
  ✅ vector-count mismatch is retried, then fails the batch (never partial)
  ✅ permanent provider error fails the batch without retries
  ✅ embed_chunks() summary keeps failed chunk indices
  ✅ OpenAI provider sorts response items by index
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from docflow.core.errors import PermanentDependencyError, TransientDependencyError
from docflow.processing.chunking import Chunk
from docflow.processing.embeddings import (
    EmbeddingBatcher,
    OpenAIEmbeddingProvider,
    embedding_error_message,
)
from docflow.resilience.circuit_breaker import CircuitBreaker
from docflow.resilience.retry import ResilientCaller, RetryPolicy


def _chunks(n: int, doc: str = "doc-1") -> list[Chunk]:
    return [Chunk(doc, i, f"chunk text {i}", i * 10, i * 10 + 10, 3) for i in range(n)]


@pytest.fixture
def make_batcher(fake_provider, recording_sleep, fake_clock):
    def _build(batch_size: int = 200, base_delay: float = 0.05, max_retries: int = 2):
        caller = ResilientCaller(
            breaker=CircuitBreaker("embeddings", threshold=5, timeout=60, clock=fake_clock),
            policy=RetryPolicy(max_retries=max_retries, initial_delay=1.0, max_delay=4.0, jitter=False),
            soft_timeout=5.0,
            hard_timeout=10.0,
            sleep=recording_sleep,
        )
        return EmbeddingBatcher(
            fake_provider, caller,
            batch_size=batch_size, base_delay=base_delay, sleep=recording_sleep,
        )
    return _build


@pytest.mark.unit
class TestBatching:

    async def test_450_chunks_make_three_batches(self, make_batcher, fake_provider, recording_sleep):
        batcher = make_batcher()
        batches = [b async for b in batcher.iter_batches(_chunks(450))]

        assert fake_provider.batch_sizes == [200, 200, 50]
        assert [b.batch_index for b in batches] == [0, 1, 2]
        assert batches[0].chunk_indices == list(range(0, 200))
        assert batches[2].chunk_indices == list(range(400, 450))
        assert recording_sleep.delays == [0.05, 0.05]

    async def test_single_batch_has_no_delay(self, make_batcher, recording_sleep):
        batcher = make_batcher()
        batches = [b async for b in batcher.iter_batches(_chunks(5))]
        assert len(batches) == 1
        assert recording_sleep.delays == []

    async def test_vectors_align_with_chunks(self, make_batcher):
        batch = await make_batcher().embed_batch(_chunks(7))
        assert batch.succeeded
        for position, (chunk, vector) in enumerate(batch.pairs()):
            assert vector[0] == float(len(chunk.text))
            assert vector[1] == float(position)

    async def test_partition_sizes(self, make_batcher):
        sizes = [len(b) for b in make_batcher(batch_size=3).partition(_chunks(8))]
        assert sizes == [3, 3, 2]

    def test_batch_size_must_be_positive(self, make_batcher):
        with pytest.raises(ValueError):
            make_batcher(batch_size=0)


@pytest.mark.unit
@pytest.mark.resilience
class TestBatchFailures:

    async def test_count_mismatch_is_retried_then_fails(self, make_batcher, fake_provider):
        fake_provider.short_by = 1
        batch = await make_batcher(max_retries=2).embed_batch(_chunks(4))

        assert not batch.succeeded
        assert batch.vectors is None
        assert isinstance(batch.error, TransientDependencyError)
        assert len(fake_provider.calls) == 3
        assert batch.chunks == _chunks(4)
        with pytest.raises(ValueError):
            batch.pairs()

    async def test_transient_then_success(self, make_batcher, fake_provider, recording_sleep):
        fake_provider.failures = [TransientDependencyError("blip")]
        batch = await make_batcher().embed_batch(_chunks(2))
        assert batch.succeeded
        assert [a.outcome for a in batch.attempts] == ["retryable", "success"]
        assert recording_sleep.delays == [1.0]

    async def test_permanent_error_fails_immediately(self, make_batcher, fake_provider):
        fake_provider.failures = [PermanentDependencyError("invalid input")]
        batch = await make_batcher().embed_batch(_chunks(2))
        assert isinstance(batch.error, PermanentDependencyError)
        assert len(fake_provider.calls) == 1
        assert embedding_error_message(batch.error).startswith("embedding request rejected")

    async def test_embed_chunks_reports_failed_indices(self, make_batcher, fake_provider):
        fake_provider.failures = [PermanentDependencyError("bad")]
        result = await make_batcher(batch_size=2).embed_chunks(_chunks(5))

        assert result.total_chunks == 5
        assert result.failed_chunks == [0, 1]
        assert result.success_rate == pytest.approx(3 / 5)
        assert [b.succeeded for b in result.batches] == [False, True, True]


@pytest.mark.unit
class TestOpenAIProvider:

    async def test_response_sorted_by_index(self):
        provider = OpenAIEmbeddingProvider(model="text-embedding-3-small", api_key="sk-test")
        response = SimpleNamespace(
            data=[
                SimpleNamespace(index=1, embedding=[0.2]),
                SimpleNamespace(index=0, embedding=[0.1]),
            ],
            usage=SimpleNamespace(total_tokens=4),
        )
        client = MagicMock()
        client.embeddings.create = AsyncMock(return_value=response)
        provider._client = client

        assert await provider.embed_batch(["a", "b"]) == [[0.1], [0.2]]
        kwargs = client.embeddings.create.await_args.kwargs
        assert kwargs["model"] == "text-embedding-3-small"
        assert kwargs["input"] == ["a", "b"]
        assert "dimensions" not in kwargs
