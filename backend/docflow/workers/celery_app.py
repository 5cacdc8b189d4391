"""
Celery Application Factory

Configures the Celery app that runs document pipelines out of band.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) for local dev.
Result backend: Redis (optional; run state is tracked in the database).

Queue topology:
  documents.process      — pipeline runs and retries
  documents.maintenance  — periodic cache purge and job cleanup

Task payloads carry document ids and options only; workers load the
document and its stored file themselves.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docflow.core.config import settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.process",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.process",
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        "documents.maintenance",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.maintenance",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docflow.workers.tasks.process_document":        {"queue": "documents.process"},
    "docflow.workers.tasks.retry_failed_processing": {"queue": "documents.process"},
    "docflow.workers.tasks.purge_similarity_cache":  {"queue": "documents.maintenance"},
    "docflow.workers.tasks.cleanup_expired_jobs":    {"queue": "documents.maintenance"},
}

BEAT_SCHEDULE = {
    "purge-similarity-cache-hourly": {
        "task":     "docflow.workers.tasks.purge_similarity_cache",
        "schedule": crontab(minute=15),
        "options":  {"queue": "documents.maintenance"},
    },
    "cleanup-expired-jobs-daily": {
        "task":     "docflow.workers.tasks.cleanup_expired_jobs",
        "schedule": crontab(hour=3, minute=0),
        "options":  {"queue": "documents.maintenance"},
    },
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docflow")

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
        task_default_queue="documents.process",
        task_default_exchange="documents",
        task_default_routing_key="documents.process",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=1800,   # OCR of long scans is slow
        task_time_limit=1900,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        beat_schedule=BEAT_SCHEDULE,

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docflow.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_after_setup_logger(logger, loglevel=None, **_):
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in logger.handlers:
        handler.setFormatter(formatter)
    logger.setLevel(logging.DEBUG if settings.debug else (loglevel or logging.INFO))


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, (kwargs or {}).get("document_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "-"), exception,
        exc_info=True,
    )
