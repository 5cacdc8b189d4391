"""
Celery Tasks — Document Pipeline

Task: process_document
  Runs the full pipeline for one document (PipelineOrchestrator.process).
  A document already being processed (ConflictError) is retried later;
  a missing document is reported and dropped. Refused runs return the
  ErrorResponse envelope under "error".

Task: retry_failed_processing
  Re-runs the latest failed job of a document, bounded by its max_retries.

Task: purge_similarity_cache   (beat, hourly)
Task: cleanup_expired_jobs     (beat, daily)

Process lifecycle
  run_async() drives task coroutines on one long-lived event loop per
  thread. A prefork child runs everything on its main thread, so the
  recognition pool built in worker_process_init (N engines with all
  language packs loaded) is leased by every task that process runs and
  terminated in worker_process_shutdown.
  A task running on any other loop (eager mode, thread or solo pools, a
  caller already inside a running loop) gets a task-scoped pool that is
  built and shut down with the task.

  The DB engine is still built per task and disposed on exit.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

from celery import Task
from celery.signals import worker_process_init, worker_process_shutdown

from docflow.core.exceptions import (
    ConflictError,
    DocumentNotFoundError,
    JobNotFoundError,
    MaxRetriesExceededError,
)
from docflow.schemas.documents import ProcessingErrors
from docflow.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

_thread_state = threading.local()

# Process-wide recognition pool and the loop its semaphore is bound to.
_recognition_pool = None
_recognition_loop: asyncio.AbstractEventLoop | None = None


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def task_loop() -> asyncio.AbstractEventLoop:
    """The event loop this thread runs task coroutines on, created on first use."""
    loop = getattr(_thread_state, "loop", None)
    if loop is None or loop.is_closed():
        loop = _thread_state.loop = asyncio.new_event_loop()
    return loop


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return task_loop().run_until_complete(coro)
    # Already inside a loop: run on a private loop in a helper thread.
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def _close_task_loop() -> None:
    loop = getattr(_thread_state, "loop", None)
    if loop is not None and not loop.is_closed():
        loop.run_until_complete(loop.shutdown_default_executor())
        loop.close()
    _thread_state.loop = None


# ---------------------------------------------------------------------------
# Worker process lifecycle
# ---------------------------------------------------------------------------

def _new_recognition_pool():
    from docflow.core.config import settings
    from docflow.processing.ocr import RecognitionWorkerPool

    return RecognitionWorkerPool(size=settings.ocr_pool_size, languages=settings.ocr_languages)


async def _start_recognition_pool():
    pool = _new_recognition_pool()
    await pool.start()
    return pool


@worker_process_init.connect
def init_worker_process(**kwargs) -> None:
    global _recognition_pool, _recognition_loop
    if _recognition_pool is not None:
        return
    _recognition_pool = run_async(_start_recognition_pool())
    _recognition_loop = task_loop()
    logger.info("Recognition pool ready | engines=%d", _recognition_pool.size)


@worker_process_shutdown.connect
def shutdown_worker_process(**kwargs) -> None:
    global _recognition_pool, _recognition_loop
    pool, loop = _recognition_pool, _recognition_loop
    _recognition_pool, _recognition_loop = None, None
    if pool is not None and loop is not None and not loop.is_closed():
        loop.run_until_complete(pool.shutdown())
        logger.info("Recognition pool shut down")
    _close_task_loop()


async def _acquire_recognition_pool():
    """(pool, owned): the process pool when running on its loop, else a task-scoped one."""
    if _recognition_pool is not None and asyncio.get_running_loop() is _recognition_loop:
        return _recognition_pool, False
    return await _start_recognition_pool(), True


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------

@dataclass
class WorkerRuntime:
    orchestrator: Any
    similarity:   Any


@asynccontextmanager
async def worker_runtime(with_recognition: bool = True) -> AsyncIterator[WorkerRuntime]:
    """Build the orchestrator and its collaborators for one task invocation."""
    from docflow.collaborators.factory import build_collaborators
    from docflow.core.config import settings
    from docflow.db.session import build_engine, build_session_factory
    from docflow.processing.ocr import TextRecognitionService
    from docflow.processing.similarity import SimilarityEngine
    from docflow.repositories.sql import SqlDocumentStore
    from docflow.services.pipeline import PipelineOrchestrator

    engine = build_engine()
    store = SqlDocumentStore(build_session_factory(engine))
    similarity = SimilarityEngine(store, settings)

    pool, owns_pool = None, False
    recognition = None
    if with_recognition:
        pool, owns_pool = await _acquire_recognition_pool()
        recognition = TextRecognitionService(
            pool,
            pdf_dpi=settings.ocr_pdf_dpi,
            max_image_height=settings.ocr_max_image_height,
        )

    orchestrator = PipelineOrchestrator(
        store,
        build_collaborators(settings),
        recognition=recognition,
        similarity=similarity,
        config=settings,
    )
    logger.debug(
        "Worker runtime ready | env=%s recognition=%s shared_pool=%s",
        settings.app_env, with_recognition, pool is not None and not owns_pool,
    )
    try:
        yield WorkerRuntime(orchestrator=orchestrator, similarity=similarity)
    finally:
        if owns_pool:
            await pool.shutdown()
        await engine.dispose()


# ---------------------------------------------------------------------------
# Pipeline tasks
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docflow.workers.tasks.process_document",
    bind=True,
    max_retries=5,
    default_retry_delay=60,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(
    self: Task,
    *,
    document_id: str,
    options: dict[str, Any] | None = None,
) -> dict[str, Any]:
    try:
        return run_async(_process_document_async(uuid.UUID(document_id), options))
    except ConflictError as exc:
        if self.request.retries >= self.max_retries:
            logger.error("Document still busy, giving up | doc=%s", document_id)
            return _refused("conflict", exc)
        logger.warning("Document busy, retrying later | doc=%s", document_id)
        raise self.retry(exc=exc)


async def _process_document_async(document_id: uuid.UUID, options: dict[str, Any] | None) -> dict[str, Any]:
    async with worker_runtime() as runtime:
        try:
            result = await runtime.orchestrator.process(document_id, options)
        except DocumentNotFoundError as exc:
            logger.error("Document not found | doc=%s", document_id)
            return _refused("not_found", exc)
    return _summarize(result)


@celery_app.task(
    name="docflow.workers.tasks.retry_failed_processing",
    bind=True,
    max_retries=5,
    default_retry_delay=60,
    acks_late=True,
)
def retry_failed_processing(self: Task, *, document_id: str) -> dict[str, Any]:
    try:
        return run_async(_retry_failed_processing_async(uuid.UUID(document_id)))
    except ConflictError as exc:
        if self.request.retries >= self.max_retries:
            logger.error("Document still busy, giving up | doc=%s", document_id)
            return _refused("conflict", exc)
        logger.warning("Document busy, retrying later | doc=%s", document_id)
        raise self.retry(exc=exc)


async def _retry_failed_processing_async(document_id: uuid.UUID) -> dict[str, Any]:
    async with worker_runtime() as runtime:
        try:
            result = await runtime.orchestrator.retry_failed_processing(document_id)
        except (JobNotFoundError, DocumentNotFoundError) as exc:
            logger.error("Retry skipped | doc=%s error=%s", document_id, exc)
            return _refused("not_found", exc)
        except MaxRetriesExceededError as exc:
            logger.warning("Retry refused | doc=%s error=%s", document_id, exc)
            return _refused("max_retries_exceeded", exc)
    return _summarize(result)


# ---------------------------------------------------------------------------
# Maintenance tasks: Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(name="docflow.workers.tasks.purge_similarity_cache", acks_late=True)
def purge_similarity_cache() -> dict[str, int]:
    return run_async(_purge_similarity_cache_async())


async def _purge_similarity_cache_async() -> dict[str, int]:
    async with worker_runtime(with_recognition=False) as runtime:
        removed = await runtime.similarity.purge_expired_cache()
    return {"removed": removed}


@celery_app.task(name="docflow.workers.tasks.cleanup_expired_jobs", acks_late=True)
def cleanup_expired_jobs(older_than_days: int | None = None) -> dict[str, int]:
    return run_async(_cleanup_expired_jobs_async(older_than_days))


async def _cleanup_expired_jobs_async(older_than_days: int | None) -> dict[str, int]:
    async with worker_runtime(with_recognition=False) as runtime:
        removed = await runtime.orchestrator.cleanup_expired_jobs(older_than_days)
    return {"removed": removed}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _refused(status: str, exc: Exception) -> dict[str, Any]:
    return {
        "status":      status,
        "document_id": str(exc.document_id),
        "error":       ProcessingErrors.from_exception(exc).model_dump(mode="json"),
    }


def _summarize(result) -> dict[str, Any]:
    return {
        "status":          result.status.value,
        "document_id":     str(result.document_id),
        "job_id":          str(result.job_id) if result.job_id else None,
        "completed_steps": result.summary.completed_steps,
        "failed_steps":    result.summary.failed_steps,
        "retry_count":     result.retry_count,
    }
