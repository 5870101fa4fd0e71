"""
Stuck-document sweep.

A document is stuck when it has been in 'processing' for longer than the
configured threshold (its processing_started_at is older than now − threshold).
Each stuck document is moved to 'error' with the message "processing timed
out", which frees it for manual or automatic reprocessing.

Properties:
  • Idempotent — the transition is a conditional UPDATE on
    (status='processing' AND processing_started_at < cutoff); a document the
    sweep already resolved no longer matches, so a second sweep is a no-op.
  • Isolated — a failure on one document is recorded in the report and the
    sweep moves on to the next one.
  • Never raises — the caller is a long-running loop (coordinator task or
    Celery beat) that must survive any single bad run.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from docflow.core.errors import StuckJobError
from docflow.storage.base import DocumentRepository, ProcessingLogStore
from docflow.storage.sql import utc_now

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    cutoff:    datetime
    checked:   int = 0
    timed_out: list[uuid.UUID] = field(default_factory=list)
    failed:    dict[uuid.UUID, str] = field(default_factory=dict)
    error:     Optional[str] = None      # the stuck-document query itself failed


class StuckDocumentSweeper:

    def __init__(
        self,
        documents: DocumentRepository,
        logs:      Optional[ProcessingLogStore],
        threshold: timedelta,
        now:       Callable[[], datetime] = utc_now,
    ) -> None:
        self._documents = documents
        self._logs      = logs
        self._threshold = threshold
        self._now       = now

    @classmethod
    def from_settings(cls, settings, documents, logs, now=utc_now) -> "StuckDocumentSweeper":
        return cls(
            documents,
            logs,
            threshold=timedelta(milliseconds=settings.stuck_document_threshold),
            now=now,
        )

    @property
    def threshold(self) -> timedelta:
        return self._threshold

    async def find_stuck(self) -> list:
        return await self._documents.list_stuck(self._now() - self._threshold)

    async def sweep(self) -> SweepReport:
        cutoff = self._now() - self._threshold
        report = SweepReport(cutoff=cutoff)

        try:
            stuck = await self._documents.list_stuck(cutoff)
        except Exception as exc:
            logger.exception("Stuck sweep query failed")
            report.error = f"{type(exc).__name__}: {exc}"
            return report

        report.checked = len(stuck)
        for doc in stuck:
            error = StuckJobError()
            try:
                changed = await self._documents.fail_if_stuck(doc.id, cutoff, error.user_message)
                if not changed:
                    continue
                report.timed_out.append(doc.id)
                logger.warning(
                    "Stuck document timed out | doc=%s started_at=%s threshold_s=%.0f",
                    doc.id, doc.processing_started_at, self._threshold.total_seconds(),
                )
                if self._logs is not None:
                    await self._logs.log(
                        doc.id, "sweep", "failed",
                        message=error.user_message,
                        details={"threshold_ms": int(self._threshold.total_seconds() * 1000)},
                    )
            except Exception as exc:
                report.failed[doc.id] = f"{type(exc).__name__}: {exc}"
                logger.exception("Stuck sweep failed for doc=%s", doc.id)

        if stuck:
            logger.info(
                "Stuck sweep done | candidates=%d timed_out=%d failed=%d",
                report.checked, len(report.timed_out), len(report.failed),
            )
        return report
