"""
Embedding Batcher  —  Sequential Batches through the Resilience Layer
══════════════════════════════════════════════════════════════════════

Design goals:
  • Batch efficiency: one provider call per `batch_size` chunks (default 200)
  • Smooth provider load: batches of one document are dispatched strictly in
    order, with `base_delay` seconds between dispatches (independent of any
    retry backoff)
  • Resilience: every batch call goes through ResilientCaller (soft + hard
    timeout, retry on transient errors, shared "embeddings" circuit breaker)
  • Alignment: vector i always belongs to chunk i of the same batch; a
    response with the wrong number of vectors is a transient failure and is
    retried, never partially accepted

Batch outcomes:
  EmbeddingBatcher.iter_batches() yields one EmbeddingBatch per batch, in
  chunk-index order, either with `vectors` or with `error`. A failed batch
  keeps its chunks so nothing is silently dropped; the document pipeline
  decides what a failure means (all-or-nothing per document).

    450 chunks, batch_size=200 → 200, 200, 50   (two inter-batch delays)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Sequence

from docflow.core.errors import (
    PermanentDependencyError,
    PipelineError,
    TransientDependencyError,
    classify_error,
)
from docflow.processing.chunking import Chunk
from docflow.resilience.retry import ResilientCaller, RetryAttempt

logger = logging.getLogger(__name__)

Vector = list[float]
Sleep  = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Embedding capability
# ---------------------------------------------------------------------------

class EmbeddingProvider(ABC):
    """
    Opaque embedding capability: texts in, one vector per text out.

    Implementations raise freely; the batcher classifies whatever they raise.
    """

    @abstractmethod
    async def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        ...


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    OpenAI embeddings via openai.AsyncOpenAI.

    The SDK's own retries are disabled (max_retries=0); ResilientCaller owns
    the retry policy.
    """

    def __init__(
        self,
        model:      str = "text-embedding-3-small",
        api_key:    str = "",
        dimensions: Optional[int] = None,
    ) -> None:
        self._model      = model
        self._dimensions = dimensions
        self._api_key    = api_key
        self._client     = None

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key or None, max_retries=0)
        return self._client

    async def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        t_api = time.monotonic()

        kwargs: dict = {"model": self._model, "input": list(texts)}
        if self._dimensions:
            # dimensions param only works for text-embedding-3-* models
            kwargs["dimensions"] = self._dimensions

        response = await self._get_client().embeddings.create(**kwargs)

        tokens_used = response.usage.total_tokens if response.usage else 0
        logger.debug(
            "OpenAI embeddings | size=%d tokens=%d api_ms=%.0f",
            len(texts), tokens_used, (time.monotonic() - t_api) * 1000,
        )
        data = sorted(response.data, key=lambda d: d.index)
        return [list(item.embedding) for item in data]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingBatch:
    """
    Outcome of one provider call.

    chunks   : chunk references in index order (len ≤ batch_size)
    vectors  : aligned with chunks on success, None on failure
    error    : the terminal PipelineError on failure
    attempts : per-attempt history recorded by ResilientCaller
    """
    batch_index: int
    chunks:      list[Chunk]
    vectors:     Optional[list[Vector]]    = None
    error:       Optional[PipelineError]   = None
    attempts:    list[RetryAttempt]        = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.vectors is not None

    @property
    def chunk_indices(self) -> list[int]:
        return [c.index for c in self.chunks]

    def pairs(self) -> list[tuple[Chunk, Vector]]:
        if not self.succeeded:
            raise ValueError(f"batch {self.batch_index} has no vectors")
        return list(zip(self.chunks, self.vectors))


@dataclass
class EmbeddingResult:
    """
    Full output of embed_chunks() for one document.

    failed_chunks : indices of chunks retained for reprocessing
    """
    batches:       list[EmbeddingBatch]
    total_chunks:  int
    total_tokens:  int
    elapsed_ms:    float
    failed_chunks: list[int] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_chunks == 0:
            return 1.0
        return (self.total_chunks - len(self.failed_chunks)) / self.total_chunks


# ---------------------------------------------------------------------------
# Batcher
# ---------------------------------------------------------------------------

class EmbeddingBatcher:
    """
    Usage:
        batcher = EmbeddingBatcher(provider, caller, batch_size=200, base_delay=0.05)

        async for batch in batcher.iter_batches(chunks):
            if not batch.succeeded:
                ...  # batch.chunks kept for retry
            await writer.write_batch(doc_id, batch.pairs())
    """

    def __init__(
        self,
        provider:   EmbeddingProvider,
        caller:     ResilientCaller,
        batch_size: int   = 200,
        base_delay: float = 0.05,        # seconds between dispatches
        sleep:      Sleep = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._provider   = provider
        self._caller     = caller
        self._batch_size = batch_size
        self._base_delay = base_delay
        self._sleep      = sleep

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def partition(self, chunks: Iterable[Chunk]) -> Iterable[list[Chunk]]:
        it = iter(chunks)
        while True:
            batch = list(itertools.islice(it, self._batch_size))
            if not batch:
                return
            yield batch

    async def iter_batches(self, chunks: Iterable[Chunk]) -> AsyncIterator[EmbeddingBatch]:
        for batch_idx, batch in enumerate(self.partition(chunks)):
            if batch_idx > 0 and self._base_delay > 0:
                await self._sleep(self._base_delay)
            yield await self.embed_batch(batch, batch_idx)

    async def embed_batch(self, batch: list[Chunk], batch_idx: int = 0) -> EmbeddingBatch:
        texts   = [chunk.text for chunk in batch]
        history: list[RetryAttempt] = []

        async def _call() -> list[Vector]:
            vectors = await self._provider.embed_batch(texts)
            if len(vectors) != len(texts):
                raise TransientDependencyError(
                    f"embedding provider returned {len(vectors)} vectors for {len(texts)} inputs",
                    dependency=self._caller.dependency,
                )
            return vectors

        try:
            vectors = await self._caller.call(
                _call,
                operation=f"embed batch {batch_idx} ({len(batch)} chunks)",
                history=history,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_error(exc, dependency=self._caller.dependency)
            logger.error(
                "Embedding batch failed | batch=%d chunks=%d-%d error=%s",
                batch_idx, batch[0].index, batch[-1].index, error,
            )
            return EmbeddingBatch(batch_idx, batch, error=error, attempts=history)

        return EmbeddingBatch(batch_idx, batch, vectors=vectors, attempts=history)

    async def embed_chunks(self, chunks: Sequence[Chunk]) -> EmbeddingResult:
        """Embed every chunk, continuing past failed batches, and summarise."""
        t0 = time.monotonic()
        batches: list[EmbeddingBatch] = []
        failed:  list[int] = []

        async for batch in self.iter_batches(chunks):
            batches.append(batch)
            if not batch.succeeded:
                failed.extend(batch.chunk_indices)

        elapsed_ms = (time.monotonic() - t0) * 1000
        total_tokens = sum(c.token_count for c in chunks)

        logger.info(
            "EmbeddingBatcher done | chunks=%d batches=%d failed=%d tokens_est=%d elapsed_ms=%.0f",
            len(chunks), len(batches), len(failed), total_tokens, elapsed_ms,
        )
        return EmbeddingResult(
            batches=batches,
            total_chunks=len(chunks),
            total_tokens=total_tokens,
            elapsed_ms=elapsed_ms,
            failed_chunks=failed,
        )


def embedding_error_message(error: PipelineError) -> str:
    """Human-readable document error for a failed embedding batch."""
    if isinstance(error, PermanentDependencyError):
        return f"embedding request rejected: {error.user_message}"
    return f"embedding failed: {error.user_message}"
