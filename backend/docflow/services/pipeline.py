"""
DocumentPipeline — chunk → embed → store for one document.

Steps (per document, strictly in chunk-index order):

  1. pending → processing       (guarded; a document not in 'pending' is skipped)
  2. normalize + chunk          (deterministic, in memory)
  3. AI abstract + keywords     (optional, failure only logged)
  4. for each embedding batch:
       cancellation check       (batch boundary only, never mid-call)
       embed via batcher        (retry / timeouts / breaker inside)
       write via StorageWriter  (atomic insert units)
       progress update
  5. processing → ready

Any failure ends in processing → error with a human-readable message.
Persisted batches are left in place on failure or cancellation;
reprocessing clears them first. Per-document policy is all-or-nothing:
a document is only 'ready' when every chunk is stored.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from typing import Optional, Sequence

from docflow.core.errors import (
    EmptyDocumentError,
    PipelineError,
    ProcessingCancelledError,
)
from docflow.processing.chunking import TextChunker, TimeSegment, normalize_text
from docflow.processing.embeddings import EmbeddingBatcher, embedding_error_message
from docflow.processing.keywords import KeywordGenerator
from docflow.processing.summarizer import AbstractGenerator
from docflow.storage.base import DocumentRepository, DocumentStatus, ProcessingLogStore
from docflow.storage.writer import StorageWriter

logger = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    document_id:   uuid.UUID
    status:        DocumentStatus
    chunk_count:   int = 0
    error_message: Optional[str] = None
    elapsed_ms:    float = 0.0


class _BatchFailed(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DocumentPipeline:

    def __init__(
        self,
        documents:  DocumentRepository,
        logs:       ProcessingLogStore,
        chunker:    TextChunker,
        batcher:    EmbeddingBatcher,
        writer:     StorageWriter,
        summarizer: Optional[AbstractGenerator] = None,
        keywords:   Optional[KeywordGenerator] = None,
    ) -> None:
        self._documents  = documents
        self._logs       = logs
        self._chunker    = chunker
        self._batcher    = batcher
        self._writer     = writer
        self._summarizer = summarizer
        self._keywords   = keywords

    async def process(
        self,
        document_id:   uuid.UUID,
        text:          str,
        title:         str = "",
        time_segments: Sequence[TimeSegment] | None = None,
        cancel_event:  Optional[asyncio.Event] = None,
    ) -> PipelineOutcome:
        t0 = time.monotonic()
        text = normalize_text(text)

        if not await self._documents.mark_processing(document_id, len(text)):
            doc = await self._documents.get(document_id)
            current = doc.status if doc else "missing"
            logger.warning("Pipeline skipped | doc=%s status=%s", document_id, current)
            return PipelineOutcome(
                document_id,
                DocumentStatus(current) if doc else DocumentStatus.ERROR,
                error_message=None if doc else "document not found",
            )

        stored = 0
        try:
            if not text:
                raise EmptyDocumentError()

            # Step 1: chunk
            await self._logs.log(document_id, "chunk", "started", details={"chars": len(text)})
            chunks = self._chunker.chunk(text, str(document_id), time_segments)
            await self._logs.log(
                document_id, "chunk", "completed", details={"chunks": len(chunks)},
            )

            # Step 2: abstract and keywords (non-fatal)
            if self._summarizer is not None:
                abstract = await self._summarizer.generate(title, chunks)
                if abstract:
                    await self._documents.set_abstract(document_id, abstract)
            if self._keywords is not None:
                keywords = await self._keywords.generate(title, chunks)
                if keywords is not None:
                    await self._documents.set_keywords(document_id, keywords.as_json())
                    await self._logs.log(
                        document_id, "keywords", "completed",
                        details={"count": len(keywords.keywords), "method": keywords.method},
                    )

            # Step 3: embed + store, batch by batch
            await self._logs.log(
                document_id, "embed", "started",
                details={"chunks": len(chunks), "batch_size": self._batcher.batch_size},
            )
            _check_cancelled(cancel_event)
            async with aclosing(self._batcher.iter_batches(chunks)) as batches:
                async for batch in batches:
                    if not batch.succeeded:
                        raise _BatchFailed(embedding_error_message(batch.error))

                    stored += await self._writer.write_batch(document_id, batch.pairs())
                    await self._documents.update_progress(document_id, stored)
                    await self._logs.log(
                        document_id, "store", "progress",
                        details={"batch": batch.batch_index, "stored": stored, "total": len(chunks)},
                    )
                    if stored < len(chunks):
                        _check_cancelled(cancel_event)

            # Step 4: complete
            if not await self._documents.mark_ready(document_id, stored):
                # resolved elsewhere meanwhile (e.g. the stuck sweep)
                doc = await self._documents.get(document_id)
                logger.warning(
                    "Pipeline finished but ready refused | doc=%s status=%s",
                    document_id, doc.status if doc else "missing",
                )
                return PipelineOutcome(
                    document_id,
                    DocumentStatus(doc.status) if doc else DocumentStatus.ERROR,
                    chunk_count=stored,
                    error_message=doc.error_message if doc else None,
                    elapsed_ms=(time.monotonic() - t0) * 1000,
                )

            elapsed_ms = (time.monotonic() - t0) * 1000
            await self._logs.log(
                document_id, "complete", "completed",
                details={"chunks": stored, "elapsed_ms": round(elapsed_ms)},
            )
            logger.info(
                "Pipeline done | doc=%s chunks=%d elapsed_ms=%.0f",
                document_id, stored, elapsed_ms,
            )
            return PipelineOutcome(document_id, DocumentStatus.READY, stored, elapsed_ms=elapsed_ms)

        except _BatchFailed as exc:
            return await self._fail(document_id, exc.message, stored, t0)
        except PipelineError as exc:
            return await self._fail(document_id, exc.user_message, stored, t0)
        except asyncio.CancelledError:
            await asyncio.shield(self._fail(document_id, "processing cancelled", stored, t0))
            raise
        except Exception as exc:
            logger.exception("Pipeline crashed | doc=%s", document_id)
            return await self._fail(
                document_id, f"unexpected error: {type(exc).__name__}: {exc}", stored, t0,
            )

    async def _fail(
        self,
        document_id: uuid.UUID,
        message:     str,
        stored:      int,
        t0:          float,
    ) -> PipelineOutcome:
        await self._documents.mark_error(document_id, message)
        await self._logs.log(
            document_id, "error", "failed", message=message, details={"stored": stored},
        )
        logger.error("Pipeline failed | doc=%s stored=%d error=%s", document_id, stored, message)
        return PipelineOutcome(
            document_id,
            DocumentStatus.ERROR,
            chunk_count=stored,
            error_message=message,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )


def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ProcessingCancelledError()
