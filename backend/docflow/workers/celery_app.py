"""
Celery Application Factory

Runs the periodic maintenance side of the pipeline outside the API process.
Broker: Redis (redis://) by default; RabbitMQ (amqp://) works unchanged.
Result backend: Redis (tasks report summaries; document state lives in the DB).

Queue topology:
  documents.maintenance   — stuck-document sweep (beat-scheduled)
  system.health           — internal health-check tasks

The sweep is idempotent, so running it here and in the API process's own
sweep loop at the same time is safe: each stuck document is timed out once.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docflow.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.maintenance",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.maintenance",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docflow.workers.tasks.sweep_stuck_documents": {"queue": "documents.maintenance"},
    "docflow.workers.tasks.health_check":          {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app(settings: Settings | None = None) -> Celery:
    settings = settings or get_settings()
    app = Celery("docflow")

    sweep_seconds = settings.stuck_sweep_interval / 1000

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.maintenance",
        task_default_exchange="documents",
        task_default_routing_key="documents.maintenance",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts: a sweep run must finish before the next one is due ---
        task_soft_time_limit=max(10, int(sweep_seconds * 0.8)),
        task_time_limit=max(15, int(sweep_seconds)),

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stuck-document sweep) ---
        beat_schedule={
            "sweep-stuck-documents": {
                "task":     "docflow.workers.tasks.sweep_stuck_documents",
                "schedule": sweep_seconds,
                "options":  {"queue": "documents.maintenance", "expires": sweep_seconds},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docflow.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s", task_id, task.name, state)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s error=%s",
        task_id, exception,
        exc_info=True,
    )
