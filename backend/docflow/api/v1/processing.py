"""
Processing Monitoring Router

  GET  /api/v1/processing/load       coordinator slots, queue depth, status counts
  GET  /api/v1/processing/stuck      documents past the stuck threshold
  GET  /api/v1/processing/circuits   circuit breaker state per dependency
  POST /api/v1/processing/sweep      run the stuck-document sweep now
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from docflow.api.dependencies import Container
from docflow.schemas.documents import (
    CircuitBreakerView,
    ProcessingLoadResponse,
    StuckDocument,
    StuckDocumentsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/processing",
    tags=["Processing Monitoring"],
)


@router.get("/load", response_model=ProcessingLoadResponse, summary="Current coordinator load")
async def get_load(container: Container) -> ProcessingLoadResponse:
    load = container.coordinator.load()
    return ProcessingLoadResponse(
        active=load.active,
        queued=load.queued,
        max_concurrent=load.max_concurrent,
        utilization=round(load.utilization, 3),
        by_status=await container.documents.count_by_status(),
    )


@router.get("/stuck", response_model=StuckDocumentsResponse, summary="Documents stuck in processing")
async def get_stuck(container: Container) -> StuckDocumentsResponse:
    stuck = await container.sweeper.find_stuck()
    return StuckDocumentsResponse(
        threshold_ms=int(container.sweeper.threshold.total_seconds() * 1000),
        count=len(stuck),
        documents=[
            StuckDocument(
                document_id=d.id,
                title=d.title,
                processing_started_at=d.processing_started_at,
                chunk_count=d.chunk_count,
            )
            for d in stuck
        ],
    )


@router.get("/circuits", response_model=list[CircuitBreakerView], summary="Circuit breaker states")
async def get_circuits(container: Container) -> list[CircuitBreakerView]:
    return [
        CircuitBreakerView(dependency=s.name, state=s.state.value, failures=s.failures)
        for s in container.breakers.snapshots()
    ]


@router.post("/sweep", summary="Run the stuck-document sweep once")
async def run_sweep(container: Container) -> dict:
    report = await container.coordinator.sweep_once()
    if report is None:
        return {"timed_out": [], "failed": {}, "checked": 0}
    logger.info("Manual sweep | checked=%d timed_out=%d", report.checked, len(report.timed_out))
    return {
        "checked":   report.checked,
        "timed_out": [str(d) for d in report.timed_out],
        "failed":    {str(k): v for k, v in report.failed.items()},
        "error":     report.error,
    }
