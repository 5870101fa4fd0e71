"""
JobCoordinator — bounded, FIFO admission of document-processing jobs.

  submit()    accepted  → a slot was free, processing started
              queued    → all `max_concurrent_jobs` slots busy, FIFO wait
              rejected  → with a reason (empty text, unknown document, not
                          pending, already in flight, shutting down)

  cancel()    queued job → dropped, document → error "processing cancelled"
              running    → stops at the next batch boundary
  reprocess() clears stored chunks, resets {ready, error} → pending, resubmits

A background task runs the StuckDocumentSweeper every `sweep_interval`
seconds. Documents it times out that are still running here are also
signalled to stop at their next batch boundary.

All bookkeeping (_active, _queue) is mutated from the event loop only, and
never across an await between check and update.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from docflow.core.errors import ProcessingCancelledError
from docflow.processing.chunking import TimeSegment, normalize_text
from docflow.services.pipeline import DocumentPipeline
from docflow.services.sweeper import StuckDocumentSweeper, SweepReport
from docflow.storage.base import ChunkStore, DocumentRepository, DocumentStatus

logger = logging.getLogger(__name__)


class SubmissionOutcome(str, Enum):
    ACCEPTED = "accepted"
    QUEUED   = "queued"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SubmissionResult:
    document_id: uuid.UUID
    outcome:     SubmissionOutcome
    reason:      Optional[str] = None
    position:    Optional[int] = None    # 1-based queue position when queued


@dataclass
class ProcessingJob:
    document_id:   uuid.UUID
    text:          str
    title:         str = ""
    time_segments: Sequence[TimeSegment] | None = None
    cancel_event:  asyncio.Event = field(default_factory=asyncio.Event)
    submitted_at:  float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class DocumentStatusView:
    document_id:    uuid.UUID
    status:         str
    error_message:  Optional[str] = None
    chunk_count:    int = 0
    queue_position: Optional[int] = None


@dataclass(frozen=True)
class CoordinatorLoad:
    active:          int
    queued:          int
    max_concurrent:  int
    active_ids:      list[uuid.UUID]
    queued_ids:      list[uuid.UUID]

    @property
    def utilization(self) -> float:
        return self.active / self.max_concurrent if self.max_concurrent else 0.0


class JobCoordinator:

    def __init__(
        self,
        pipeline:            DocumentPipeline,
        documents:           DocumentRepository,
        chunks:              ChunkStore,
        max_concurrent_jobs: int = 5,
        sweeper:             Optional[StuckDocumentSweeper] = None,
        sweep_interval:      float = 60.0,     # seconds
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self._pipeline       = pipeline
        self._documents      = documents
        self._chunks         = chunks
        self._max_concurrent = max_concurrent_jobs
        self._sweeper        = sweeper
        self._sweep_interval = sweep_interval

        self._active: dict[uuid.UUID, tuple[ProcessingJob, asyncio.Task]] = {}
        self._queue:  deque[ProcessingJob] = deque()
        self._closed = False
        self._sweep_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._sweeper is not None and self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="stuck-sweep")
        logger.info(
            "JobCoordinator started | max_concurrent=%d sweep=%s",
            self._max_concurrent, self._sweeper is not None,
        )

    async def close(self, timeout: float = 30.0) -> None:
        """Stop admitting work, signal running jobs, and wait for them."""
        self._closed = True
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

        # queued jobs stay 'pending' in the database
        self._queue.clear()
        tasks = []
        for job, task in list(self._active.values()):
            job.cancel_event.set()
            tasks.append(task)
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("JobCoordinator closed | interrupted=%d", len(tasks))

    async def wait_idle(self) -> None:
        """Wait until nothing is running or queued."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        document_id:   uuid.UUID,
        text:          str,
        title:         str = "",
        time_segments: Sequence[TimeSegment] | None = None,
    ) -> SubmissionResult:
        if self._closed:
            return self._reject(document_id, "coordinator is shutting down")
        if not normalize_text(text or ""):
            return self._reject(document_id, "document text is empty")
        if self.is_in_flight(document_id):
            return self._reject(document_id, "document is already queued or processing")

        doc = await self._documents.get(document_id)
        if doc is None:
            return self._reject(document_id, "document not found")
        if doc.status != DocumentStatus.PENDING.value:
            return self._reject(
                document_id, f"document is '{doc.status}'; use reprocess to run it again",
            )

        # re-check: the lookup above yielded to the event loop
        if self._closed:
            return self._reject(document_id, "coordinator is shutting down")
        if self.is_in_flight(document_id):
            return self._reject(document_id, "document is already queued or processing")

        job = ProcessingJob(document_id, text, title=title or doc.title, time_segments=time_segments)
        if len(self._active) < self._max_concurrent:
            self._start(job)
            logger.info(
                "Job accepted | doc=%s active=%d/%d",
                document_id, len(self._active), self._max_concurrent,
            )
            return SubmissionResult(document_id, SubmissionOutcome.ACCEPTED)

        self._queue.append(job)
        self._idle.clear()
        position = len(self._queue)
        logger.info("Job queued | doc=%s position=%d", document_id, position)
        return SubmissionResult(document_id, SubmissionOutcome.QUEUED, position=position)

    async def reprocess(
        self,
        document_id:   uuid.UUID,
        text:          str,
        title:         str = "",
        time_segments: Sequence[TimeSegment] | None = None,
    ) -> SubmissionResult:
        if self.is_in_flight(document_id):
            return self._reject(document_id, "document is already queued or processing")
        if not normalize_text(text or ""):
            return self._reject(document_id, "document text is empty")

        doc = await self._documents.get(document_id)
        if doc is None:
            return self._reject(document_id, "document not found")
        if doc.status == DocumentStatus.PROCESSING.value:
            return self._reject(document_id, "document is still processing")

        removed = await self._chunks.delete_document_chunks(document_id)
        if doc.status != DocumentStatus.PENDING.value:
            if not await self._documents.reset_for_reprocessing(document_id):
                return self._reject(document_id, "document changed state; try again")
        logger.info("Reprocess | doc=%s cleared_chunks=%d", document_id, removed)
        return await self.submit(document_id, text, title=title, time_segments=time_segments)

    async def cancel(self, document_id: uuid.UUID) -> bool:
        for job in self._queue:
            if job.document_id == document_id:
                self._queue.remove(job)
                self._update_idle()
                await self._documents.mark_error(
                    document_id, ProcessingCancelledError().user_message,
                )
                logger.info("Queued job cancelled | doc=%s", document_id)
                return True

        entry = self._active.get(document_id)
        if entry is not None:
            entry[0].cancel_event.set()
            logger.info("Running job cancel requested | doc=%s", document_id)
            return True
        return False

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_in_flight(self, document_id: uuid.UUID) -> bool:
        return document_id in self._active or any(
            j.document_id == document_id for j in self._queue
        )

    def queue_position(self, document_id: uuid.UUID) -> Optional[int]:
        for pos, job in enumerate(self._queue, start=1):
            if job.document_id == document_id:
                return pos
        return None

    async def get_status(self, document_id: uuid.UUID) -> Optional[DocumentStatusView]:
        doc = await self._documents.get(document_id)
        if doc is None:
            return None
        return DocumentStatusView(
            document_id=document_id,
            status=doc.status,
            error_message=doc.error_message if doc.status == DocumentStatus.ERROR.value else None,
            chunk_count=doc.chunk_count,
            queue_position=self.queue_position(document_id),
        )

    def load(self) -> CoordinatorLoad:
        return CoordinatorLoad(
            active=len(self._active),
            queued=len(self._queue),
            max_concurrent=self._max_concurrent,
            active_ids=list(self._active),
            queued_ids=[j.document_id for j in self._queue],
        )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep_once(self) -> Optional[SweepReport]:
        if self._sweeper is None:
            return None
        report = await self._sweeper.sweep()
        for document_id in report.timed_out:
            entry = self._active.get(document_id)
            if entry is not None:
                entry[0].cancel_event.set()
        return report

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Stuck sweep run failed; will retry next interval")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reject(self, document_id: uuid.UUID, reason: str) -> SubmissionResult:
        logger.info("Job rejected | doc=%s reason=%s", document_id, reason)
        return SubmissionResult(document_id, SubmissionOutcome.REJECTED, reason=reason)

    def _start(self, job: ProcessingJob) -> None:
        task = asyncio.create_task(self._run(job), name=f"process-{job.document_id}")
        self._active[job.document_id] = (job, task)
        self._idle.clear()

    async def _run(self, job: ProcessingJob) -> None:
        waited_ms = (time.monotonic() - job.submitted_at) * 1000
        try:
            outcome = await self._pipeline.process(
                job.document_id,
                job.text,
                title=job.title,
                time_segments=job.time_segments,
                cancel_event=job.cancel_event,
            )
            logger.info(
                "Job finished | doc=%s status=%s chunks=%d queued_ms=%.0f",
                job.document_id, outcome.status.value, outcome.chunk_count, waited_ms,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Job crashed | doc=%s", job.document_id)
        finally:
            self._active.pop(job.document_id, None)
            self._drain()

    def _drain(self) -> None:
        while self._queue and len(self._active) < self._max_concurrent and not self._closed:
            self._start(self._queue.popleft())
        self._update_idle()

    def _update_idle(self) -> None:
        if not self._active and not self._queue:
            self._idle.set()
