"""
Celery Tasks — Pipeline Maintenance

Task: sweep_stuck_documents
  Beat-scheduled every STUCK_SWEEP_INTERVAL ms. Moves documents that have
  been in 'processing' longer than STUCK_DOCUMENT_THRESHOLD ms to 'error'
  ("processing timed out") so they can be reprocessed. Returns a summary;
  never raises for a single bad document.

Task: health_check
  Pings the database from the worker.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any

from celery import Task

from docflow.core.config import Settings, get_settings
from docflow.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # already inside a loop (eager mode under an async caller)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Stuck-document sweep
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docflow.workers.tasks.sweep_stuck_documents",
    bind=True,
    acks_late=True,
    ignore_result=False,
)
def sweep_stuck_documents(self: Task) -> dict[str, Any]:
    return run_async(_sweep_async(get_settings()))


async def _sweep_async(settings: Settings) -> dict[str, Any]:
    from docflow.db.session import create_engine, create_session_factory
    from docflow.services.sweeper import StuckDocumentSweeper
    from docflow.storage.sql import SqlDocumentRepository, SqlProcessingLogStore

    engine = create_engine(settings)
    try:
        sessions = create_session_factory(engine)
        sweeper = StuckDocumentSweeper.from_settings(
            settings,
            SqlDocumentRepository(sessions),
            SqlProcessingLogStore(sessions),
        )
        report = await sweeper.sweep()
    finally:
        await engine.dispose()

    return summarize_report(report)


def summarize_report(report) -> dict[str, Any]:
    return {
        "cutoff":    report.cutoff.isoformat(),
        "checked":   report.checked,
        "timed_out": [str(d) for d in report.timed_out],
        "failed":    {str(k): v for k, v in report.failed.items()},
        "error":     report.error,
    }


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="docflow.workers.tasks.health_check")
def health_check() -> dict[str, Any]:
    return run_async(_health_async(get_settings()))


async def _health_async(settings: Settings) -> dict[str, Any]:
    from docflow.db.session import check_db_health, create_engine

    engine = create_engine(settings)
    try:
        database = await check_db_health(engine)
    finally:
        await engine.dispose()
    return {"status": "ok" if database["status"] == "ok" else "degraded", "database": database}
