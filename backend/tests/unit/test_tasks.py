"""
Unit Tests — Celery tasks
══════════════════════════
worker_runtime is patched to yield the in-memory orchestrator from the
fixtures; the async task bodies are awaited directly and the synchronous
task wrappers are called eagerly with run_async patched. The worker process
lifecycle runs for real against FakeEngine pools.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import uuid
from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest
from celery.exceptions import Retry

from docflow.core.exceptions import ConflictError
from docflow.models.documents import ProcessingStatus
from docflow.processing.ocr import RecognitionWorkerPool
from docflow.workers import tasks
from docflow.workers.celery_app import BEAT_SCHEDULE, TASK_ROUTES
from tests.fakes import FakeEngine


@pytest.fixture
def patched_runtime(orchestrator, similarity_engine):
    @asynccontextmanager
    async def _runtime(with_recognition: bool = True):
        yield tasks.WorkerRuntime(orchestrator=orchestrator, similarity=similarity_engine)

    with patch.object(tasks, "worker_runtime", _runtime):
        yield


def _raise_conflict(coro):
    coro.close()
    raise ConflictError("busy-doc")


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline task bodies
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.workers
class TestProcessDocumentTask:

    async def test_completed_run_is_summarized(self, patched_runtime, make_doc):
        doc = await make_doc(text="contract about payment terms")

        summary = await tasks._process_document_async(doc.id, None)

        assert summary["status"] == ProcessingStatus.COMPLETED.value
        assert summary["document_id"] == str(doc.id)
        assert summary["failed_steps"] == 0
        assert summary["completed_steps"] > 0
        assert summary["retry_count"] == 0

    async def test_missing_document_reported_not_raised(self, patched_runtime):
        missing = uuid.uuid4()

        summary = await tasks._process_document_async(missing, None)

        assert summary["status"] == "not_found"
        assert summary["document_id"] == str(missing)
        assert summary["error"]["error_code"] == "DOCUMENT_NOT_FOUND"

    def test_conflict_triggers_celery_retry(self):
        with patch.object(tasks, "run_async", side_effect=_raise_conflict), \
             patch.object(tasks.process_document, "retry", side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                tasks.process_document(document_id=str(uuid.uuid4()))

        assert isinstance(retry.call_args.kwargs["exc"], ConflictError)

    def test_conflict_after_last_retry_is_reported(self):
        with patch.object(tasks, "run_async", side_effect=_raise_conflict), \
             patch.object(tasks.process_document, "max_retries", 0):
            result = tasks.process_document(document_id=str(uuid.uuid4()))

        assert result["status"] == "conflict"
        assert result["error"]["error_code"] == "ALREADY_PROCESSING"


@pytest.mark.unit
@pytest.mark.workers
class TestRetryTask:

    async def test_no_failed_job_is_not_found(self, patched_runtime, make_doc):
        doc = await make_doc(text="nothing failed here")

        summary = await tasks._retry_failed_processing_async(doc.id)

        assert summary["status"] == "not_found"

    async def test_exhausted_retries_reported(self, patched_runtime, make_doc, store):
        doc = await make_doc(text="flaky")
        job = await store.create_job(doc.id, "full_processing", {}, max_retries=3)
        await store.update_job(job.id, status=ProcessingStatus.FAILED.value, retry_count=3)

        summary = await tasks._retry_failed_processing_async(doc.id)

        assert summary["status"] == "max_retries_exceeded"
        assert summary["error"]["details"][0]["message"] == "Retry count 3 has reached the limit of 3."

    def test_conflict_triggers_celery_retry(self):
        with patch.object(tasks, "run_async", side_effect=_raise_conflict), \
             patch.object(tasks.retry_failed_processing, "retry", side_effect=Retry()):
            with pytest.raises(Retry):
                tasks.retry_failed_processing(document_id=str(uuid.uuid4()))


# ─────────────────────────────────────────────────────────────────────────────
# Maintenance tasks
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.workers
class TestMaintenanceTasks:

    async def test_purge_reports_removed_count(self, patched_runtime):
        result = await tasks._purge_similarity_cache_async()

        assert result == {"removed": 0}

    async def test_cleanup_reports_removed_count(self, patched_runtime):
        result = await tasks._cleanup_expired_jobs_async(7)

        assert result == {"removed": 0}

    def test_beat_schedule_targets_registered_tasks(self):
        scheduled = {entry["task"] for entry in BEAT_SCHEDULE.values()}

        assert scheduled == {
            "docflow.workers.tasks.purge_similarity_cache",
            "docflow.workers.tasks.cleanup_expired_jobs",
        }
        assert scheduled <= set(TASK_ROUTES)


@pytest.mark.unit
@pytest.mark.workers
class TestRunAsync:

    def test_runs_coroutine_to_completion(self, worker_process):
        async def _answer():
            return 42

        assert tasks.run_async(_answer()) == 42

    def test_reuses_one_loop_across_calls(self, worker_process):
        async def _loop():
            return asyncio.get_running_loop()

        assert tasks.run_async(_loop()) is tasks.run_async(_loop())

    def test_each_thread_gets_its_own_loop(self, worker_process):
        async def _loop():
            return asyncio.get_running_loop()

        def _in_thread():
            try:
                return tasks.run_async(_loop())
            finally:
                tasks._close_task_loop()

        main = tasks.run_async(_loop())
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
            other = executor.submit(_in_thread).result()

        assert other is not main

    async def test_inside_running_loop_uses_helper_thread(self):
        async def _answer():
            return 42

        assert tasks.run_async(_answer()) == 42


# ─────────────────────────────────────────────────────────────────────────────
# Worker process lifecycle
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def worker_process():
    """Patch the pool factory to FakeEngine and tear the process state down afterwards."""
    engines: list[FakeEngine] = []

    def _factory(languages):
        engine = FakeEngine(languages)
        engines.append(engine)
        return engine

    def _new_pool():
        return RecognitionWorkerPool(engine_factory=_factory, size=2, languages=["eng", "spa"])

    with patch.object(tasks, "_new_recognition_pool", _new_pool):
        yield engines
        tasks.shutdown_worker_process()


@pytest.mark.unit
@pytest.mark.workers
class TestWorkerProcessLifecycle:

    def test_process_init_starts_pool_once(self, worker_process):
        tasks.init_worker_process()
        tasks.init_worker_process()

        assert len(worker_process) == 2
        assert tasks._recognition_pool.size == 2

    def test_tasks_lease_the_process_pool(self, worker_process):
        tasks.init_worker_process()

        first, owned_first = tasks.run_async(tasks._acquire_recognition_pool())
        second, owned_second = tasks.run_async(tasks._acquire_recognition_pool())

        assert first is second is tasks._recognition_pool
        assert not owned_first and not owned_second
        assert len(worker_process) == 2

    def test_process_pool_serves_recognition_across_tasks(self, worker_process):
        from docflow.processing.ocr import TextRecognitionService

        tasks.init_worker_process()

        async def _recognize(path):
            pool, _ = await tasks._acquire_recognition_pool()
            return await TextRecognitionService(pool).extract_text(path)

        tasks.run_async(_recognize("/tmp/a.png"))
        tasks.run_async(_recognize("/tmp/b.png"))

        assert sum(len(e.calls) for e in worker_process) == 2
        assert len(worker_process) == 2

    def test_shutdown_terminates_engines_and_closes_loop(self, worker_process):
        tasks.init_worker_process()
        pool = tasks._recognition_pool
        loop = tasks._recognition_loop

        tasks.shutdown_worker_process()

        assert pool.closed
        assert all(engine.terminated for engine in worker_process)
        assert tasks._recognition_pool is None
        assert loop.is_closed()

    def test_without_process_init_pool_is_task_scoped(self, worker_process):
        pool, owned = tasks.run_async(tasks._acquire_recognition_pool())

        assert owned
        assert pool is not tasks._recognition_pool
        tasks.run_async(pool.shutdown())

    async def test_pool_from_another_loop_is_not_shared(self, worker_process):
        with patch.object(tasks, "_recognition_pool", object()):
            pool, owned = await tasks._acquire_recognition_pool()

        assert owned
        await pool.shutdown()
