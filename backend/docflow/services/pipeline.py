"""
Document Processing Pipeline — Orchestrator

Runs one document through the fixed stage sequence:

  OCR → Parsing → Classification → Content Extraction
      → Similarity Detection → Translation → Compliance Check

Per run:
  1. Load the document (DocumentNotFoundError if absent)
  2. Take the per-document processing lease (ConflictError if held)
  3. Create the ProcessingJob, or reuse the failed one handed over by retry
  4. Mark the document processing
  5. For each enabled stage, in order:
       - job.status / document.processing_status ← the stage's state
       - run the stage; it yields Completed(...) or Failed(error)
       - Completed → write its fields + duration into the document
         Failed    → append to document.processing_errors
       - persist the partial job result
       - stop early if cancel_processing() flagged the job
  6. Close the job with the run summary; document → completed | failed
  7. Release the lease (always)

Stage isolation:
  A stage never aborts the run. Anything it raises is converted into a
  failed StageResult at the stage boundary. Only orchestration errors
  (missing document, lease conflict, store failure) propagate.

Skipped stages produce no StageResult:
  - OCR unless the document type needs it (image, pdf, doc, docx)
  - Translation unless target languages were given
  - any stage whose collaborator is not configured
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Union

from docflow.collaborators.base import Collaborators
from docflow.core.config import Settings, settings as default_settings
from docflow.core.exceptions import (
    ConflictError,
    DocumentNotFoundError,
    JobNotFoundError,
    MaxRetriesExceededError,
    StageFailure,
)
from docflow.models.documents import (
    IN_PROGRESS_STATUSES,
    Document,
    DocumentCategory,
    DocumentStatus,
    DocumentType,
    ProcessingJob,
    ProcessingStatus,
)
from docflow.processing.ocr import TextRecognitionService
from docflow.processing.similarity import SimilarityEngine
from docflow.repositories.base import DocumentStore
from docflow.schemas.documents import (
    STAGE_CLASSIFICATION,
    STAGE_COMPLIANCE,
    STAGE_EXTRACTION,
    STAGE_OCR,
    STAGE_PARSING,
    STAGE_SIMILARITY,
    STAGE_TRANSLATION,
    JobSummary,
    ProcessingOptions,
    ProcessingQueue,
    ProcessingResult,
    ProcessingStatistics,
    ProcessingSummary,
    StageResult,
)

logger = logging.getLogger(__name__)

JOB_TYPE_FULL = "full_processing"
CANCEL_MESSAGE = "Processing cancelled by user"
QUEUE_PAGE_SIZE = 50

OCR_DOCUMENT_TYPES = frozenset({
    DocumentType.IMAGE.value,
    DocumentType.PDF.value,
    DocumentType.DOC.value,
    DocumentType.DOCX.value,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Stage outcomes
# ---------------------------------------------------------------------------

@dataclass
class Completed:
    """
    details : structured stage output, stored in the StageResult
    fields  : document columns to write
    metrics : extra processing_metrics entries besides the stage duration
    """
    details: Any = None
    fields:  dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, float] = field(default_factory=dict)


@dataclass
class Failed:
    error: str


StageOutcome = Union[Completed, Failed]

StageFn = Callable[[Document, ProcessingOptions], Awaitable[StageOutcome]]


@dataclass(frozen=True)
class _Stage:
    name:       str
    status:     ProcessingStatus
    metric_key: str
    run:        StageFn


def requires_ocr(document: Document) -> bool:
    return document.document_type in OCR_DOCUMENT_TYPES


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class PipelineOrchestrator:
    """
    Stateless between runs; every piece of run state lives in the store.
    Safe to share one instance across concurrent runs on different documents.
    """

    def __init__(
        self,
        store:         DocumentStore,
        collaborators: Collaborators,
        recognition:   TextRecognitionService | None = None,
        similarity:    SimilarityEngine | None = None,
        config:        Settings | None = None,
    ) -> None:
        self._store         = store
        self._collaborators = collaborators
        self._recognition   = recognition
        self._similarity    = similarity
        self._settings      = config or default_settings

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def process(
        self,
        document_id: uuid.UUID,
        options: ProcessingOptions | dict | None = None,
        *,
        retry_of: ProcessingJob | None = None,
    ) -> ProcessingResult:
        opts = options if isinstance(options, ProcessingOptions) else ProcessingOptions.model_validate(options or {})

        document = await self._store.find_by_id(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        token = uuid.uuid4().hex
        now = _utcnow()
        acquired = await self._store.acquire_lease(
            document.id,
            token,
            now=now,
            stale_before=now - timedelta(seconds=self._settings.processing_lease_ttl_seconds),
        )
        if not acquired:
            raise ConflictError(document.id)

        try:
            job = await self._open_job(document, opts, retry_of)
            return await self._run(document, job, opts)
        finally:
            try:
                await self._store.release_lease(document.id, token)
            except Exception:
                logger.exception("Lease release failed | doc=%s", document.id)

    async def retry_failed_processing(self, document_id: uuid.UUID) -> ProcessingResult:
        job = await self._store.latest_job(document_id, ProcessingStatus.FAILED)
        if job is None:
            raise JobNotFoundError(document_id, "No failed processing job found")
        if job.retries_exhausted:
            raise MaxRetriesExceededError(document_id, job.retry_count, job.max_retries)

        options = ProcessingOptions.model_validate(job.parameters or {})
        logger.info(
            "Retrying | doc=%s job=%s attempt=%d/%d",
            document_id, job.id, job.retry_count + 1, job.max_retries,
        )
        return await self.process(document_id, options, retry_of=job)

    async def cancel_processing(self, document_id: uuid.UUID) -> None:
        job = await self._store.latest_job(document_id)
        if job is None:
            raise JobNotFoundError(document_id)

        await self._store.update_job(
            job.id,
            status=ProcessingStatus.FAILED.value,
            cancel_requested=True,
            error_message=CANCEL_MESSAGE,
            completed_at=_utcnow(),
            result={**(job.result or {}), "error": CANCEL_MESSAGE},
        )
        await self._store.update_document(
            document_id,
            status=DocumentStatus.FAILED.value,
            processing_status=ProcessingStatus.FAILED.value,
        )
        logger.info("Cancellation requested | doc=%s job=%s", document_id, job.id)

    async def get_processing_status(self, document_id: uuid.UUID) -> ProcessingResult:
        job = await self._store.latest_job(document_id)
        if job is None:
            raise JobNotFoundError(document_id)
        return self._result_from_job(job)

    async def get_processing_queue(self) -> ProcessingQueue:
        pending = await self._store.list_jobs([ProcessingStatus.PENDING], QUEUE_PAGE_SIZE, newest_first=False)
        running = await self._store.list_jobs(IN_PROGRESS_STATUSES, QUEUE_PAGE_SIZE, newest_first=False)
        failed  = await self._store.list_jobs([ProcessingStatus.FAILED], QUEUE_PAGE_SIZE, newest_first=True)
        return ProcessingQueue(
            pending=[JobSummary.model_validate(j) for j in pending],
            processing=[JobSummary.model_validate(j) for j in running],
            failed=[JobSummary.model_validate(j) for j in failed],
        )

    async def get_processing_statistics(self) -> ProcessingStatistics:
        total = await self._store.count_documents()
        by_status = await self._store.count_documents_by_processing_status()
        completed = by_status.get(ProcessingStatus.COMPLETED.value, 0)
        failed = by_status.get(ProcessingStatus.FAILED.value, 0)
        finished = completed + failed
        return ProcessingStatistics(
            total_documents=total,
            by_status=by_status,
            average_processing_time=await self._store.average_processing_time(),
            success_rate=completed / finished if finished else 0.0,
            queue_length=await self._store.count_jobs(ProcessingStatus.PENDING),
        )

    async def cleanup_expired_jobs(self, older_than_days: int | None = None) -> int:
        days = self._settings.job_retention_days if older_than_days is None else older_than_days
        removed = await self._store.delete_failed_jobs_before(_utcnow() - timedelta(days=days))
        logger.info("Expired jobs removed | count=%d older_than_days=%d", removed, days)
        return removed

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _open_job(
        self,
        document: Document,
        opts: ProcessingOptions,
        retry_of: ProcessingJob | None,
    ) -> ProcessingJob:
        if retry_of is None:
            return await self._store.create_job(
                document.id,
                JOB_TYPE_FULL,
                parameters=opts.model_dump(mode="json"),
                max_retries=self._settings.job_max_retries,
            )

        changes = {
            "retry_count":      retry_of.retry_count + 1,
            "status":           ProcessingStatus.PENDING.value,
            "cancel_requested": False,
            "error_message":    None,
            "completed_at":     None,
        }
        await self._store.update_job(retry_of.id, **changes)
        for name, value in changes.items():
            setattr(retry_of, name, value)
        return retry_of

    async def _run(self, document: Document, job: ProcessingJob, opts: ProcessingOptions) -> ProcessingResult:
        t0 = time.monotonic()
        await self._store.update_job(job.id, started_at=_utcnow())
        await self._set_document(
            document,
            status=DocumentStatus.PROCESSING.value,
            processing_status=ProcessingStatus.PENDING.value,
        )
        logger.info(
            "Processing | doc=%s job=%s type=%s retry=%d",
            document.id, job.id, document.document_type, job.retry_count,
        )

        steps: list[StageResult] = []
        cancelled = False
        for stage in self._plan(document, opts):
            if await self._cancel_requested(job):
                cancelled = True
                logger.info("Cancelled between stages | doc=%s next_stage=%s", document.id, stage.name)
                break

            await self._store.update_job(job.id, status=stage.status.value)
            await self._set_document(document, processing_status=stage.status.value)

            step = await self._execute(stage, document, opts, job)
            steps.append(step)
            await self._store.update_job(job.id, result={"steps": [s.model_dump(mode="json") for s in steps]})

        if not cancelled and await self._cancel_requested(job):
            cancelled = True

        return await self._close(document, job, steps, cancelled, int((time.monotonic() - t0) * 1000))

    def _plan(self, document: Document, opts: ProcessingOptions) -> list[_Stage]:
        c = self._collaborators
        candidates = [
            (opts.enable_ocr and requires_ocr(document), self._recognition,
             _Stage(STAGE_OCR, ProcessingStatus.OCR_PROCESSING, "ocr_processing_time", self._stage_ocr)),
            (opts.enable_parsing, c.parser,
             _Stage(STAGE_PARSING, ProcessingStatus.PARSING, "parsing_time", self._stage_parsing)),
            (opts.enable_classification, c.classifier,
             _Stage(STAGE_CLASSIFICATION, ProcessingStatus.CLASSIFYING, "classification_time", self._stage_classification)),
            (opts.enable_content_extraction, c.extractor,
             _Stage(STAGE_EXTRACTION, ProcessingStatus.EXTRACTING, "extraction_time", self._stage_extraction)),
            (opts.enable_similarity_detection, self._similarity,
             _Stage(STAGE_SIMILARITY, ProcessingStatus.INDEXING, "similarity_time", self._stage_similarity)),
            (opts.enable_translation and bool(opts.target_languages), c.translator,
             _Stage(STAGE_TRANSLATION, ProcessingStatus.TRANSLATING, "translation_time", self._stage_translation)),
            (opts.enable_compliance_check, c.compliance,
             _Stage(STAGE_COMPLIANCE, ProcessingStatus.COMPLIANCE_CHECKING, "compliance_time", self._stage_compliance)),
        ]

        plan: list[_Stage] = []
        for enabled, collaborator, stage in candidates:
            if not enabled:
                continue
            if collaborator is None:
                logger.info("Stage skipped, not configured | doc=%s stage=%s", document.id, stage.name)
                continue
            plan.append(stage)
        return plan

    async def _execute(
        self,
        stage: _Stage,
        document: Document,
        opts: ProcessingOptions,
        job: ProcessingJob,
    ) -> StageResult:
        started_at = _utcnow()
        t0 = time.monotonic()
        try:
            outcome = await stage.run(document, opts)
        except Exception as exc:
            logger.warning("Stage raised | doc=%s stage=%s error=%s", document.id, stage.name, exc)
            outcome = Failed(error=str(exc) or exc.__class__.__name__)
        duration_ms = int((time.monotonic() - t0) * 1000)
        ended_at = _utcnow()

        if isinstance(outcome, Completed):
            metrics = {**(document.processing_metrics or {}), stage.metric_key: duration_ms, **outcome.metrics}
            await self._set_document(document, **outcome.fields, processing_metrics=metrics)
            logger.info("Stage done | doc=%s stage=%s ms=%d", document.id, stage.name, duration_ms)
            return StageResult(
                name=stage.name,
                status="completed",
                start_time=started_at,
                end_time=ended_at,
                duration_ms=duration_ms,
                details=outcome.details,
            )

        errors = [
            *(document.processing_errors or []),
            {
                "step":        stage.name,
                "error":       outcome.error,
                "timestamp":   ended_at.isoformat(),
                "retry_count": job.retry_count,
            },
        ]
        await self._set_document(document, processing_errors=errors)
        logger.warning("Stage failed | doc=%s stage=%s error=%s", document.id, stage.name, outcome.error)
        return StageResult(
            name=stage.name,
            status="failed",
            start_time=started_at,
            end_time=ended_at,
            duration_ms=duration_ms,
            error=outcome.error,
        )

    async def _close(
        self,
        document: Document,
        job: ProcessingJob,
        steps: list[StageResult],
        cancelled: bool,
        total_ms: int,
    ) -> ProcessingResult:
        summary = ProcessingSummary.from_steps(steps, total_ms)
        if cancelled:
            summary.success = False
        final = ProcessingStatus.COMPLETED if summary.success else ProcessingStatus.FAILED

        if cancelled:
            error_message = CANCEL_MESSAGE
        elif summary.failed_steps:
            error_message = "; ".join(f"{s.name}: {s.error}" for s in steps if s.status == "failed")
        else:
            error_message = None

        await self._store.update_job(
            job.id,
            status=final.value,
            completed_at=_utcnow(),
            total_processing_time=total_ms,
            error_message=error_message,
            result={
                "steps":   [s.model_dump(mode="json") for s in steps],
                "summary": summary.model_dump(mode="json"),
            },
        )
        await self._set_document(
            document,
            status=(DocumentStatus.COMPLETED if final == ProcessingStatus.COMPLETED else DocumentStatus.FAILED).value,
            processing_status=final.value,
        )

        logger.info(
            "Processing finished | doc=%s job=%s status=%s steps=%d failed=%d ms=%d",
            document.id, job.id, final.value, summary.total_steps, summary.failed_steps, total_ms,
        )
        return ProcessingResult(
            document_id=document.id,
            job_id=job.id,
            status=final,
            steps=steps,
            summary=summary,
            retry_count=job.retry_count,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _stage_ocr(self, document: Document, opts: ProcessingOptions) -> StageOutcome:
        if document.document_type in (DocumentType.DOC.value, DocumentType.DOCX.value):
            # Word documents carry a text layer; the parser reads it.
            return Completed(details={"text_length": 0, "confidence": 0.0, "pages": 0, "processing_time_ms": 0})

        pages = await self._recognition.extract_text_from_multi_page(
            document.file_path, document.document_type, opts.ocr_options,
        )
        if not pages:
            return Failed(error="No pages could be recognized")

        text = "\n".join(p.text for p in pages)
        confidence = round(sum(p.confidence for p in pages) / len(pages), 4)
        recognition_ms = sum(p.processing_time_ms for p in pages)
        language = Counter(p.language for p in pages).most_common(1)[0][0]
        return Completed(
            details={
                "text_length":        len(text),
                "confidence":         confidence,
                "pages":              len(pages),
                "processing_time_ms": recognition_ms,
                "language":           language,
            },
            fields={"extracted_text": text},
            metrics={"ocr_confidence": confidence},
        )

    async def _stage_parsing(self, document: Document, opts: ProcessingOptions) -> StageOutcome:
        parsed = await self._collaborators.parser.parse(
            document.file_path,
            DocumentType(document.document_type),
            {"extract_metadata": True, "extract_structure": True, "extract_tables": True},
        )
        fields: dict[str, Any] = {"extracted_metadata": parsed.metadata}
        if not document.extracted_text and parsed.text:
            fields["extracted_text"] = parsed.text
        return Completed(
            details={
                "text_length": len(parsed.text),
                "metadata":    parsed.metadata,
                "structure":   parsed.structure,
                "table_count": len(parsed.tables),
            },
            fields=fields,
        )

    async def _stage_classification(self, document: Document, opts: ProcessingOptions) -> StageOutcome:
        result = await self._collaborators.classifier.classify(
            document.id, document.extracted_text or "", opts.classification_options,
        )
        try:
            category = DocumentCategory(result.category).value
        except ValueError:
            raise StageFailure(f"Classifier returned unknown category '{result.category}'") from None
        return Completed(
            details=asdict(result),
            fields={"category": category, "tags": list(result.tags)},
            metrics={"classification_confidence": result.confidence},
        )

    async def _stage_extraction(self, document: Document, opts: ProcessingOptions) -> StageOutcome:
        result = await self._collaborators.extractor.extract_content(
            document.id, document.extracted_text or "", opts.extraction_options,
        )
        return Completed(
            details=asdict(result),
            fields={
                "key_information": {
                    "entities":  result.entities,
                    "keywords":  result.keywords,
                    "sentiment": result.sentiment,
                    "topics":    result.topics,
                },
                "summary": result.summary,
            },
        )

    async def _stage_similarity(self, document: Document, opts: ProcessingOptions) -> StageOutcome:
        results = await self._similarity.find_similar(document.id, opts.similarity_options or None)
        duplicate = next((r for r in results if r.is_duplicate), None)
        similarity_data = {
            "document_hashes": [
                {"algorithm": "sha256", "hash": document.file_hash},
                {"algorithm": "content_sha256", "hash": SimilarityEngine.generate_document_hash(document)},
            ],
            "similar_documents": [
                {"document_id": str(r.document_id), "similarity": r.similarity, "algorithm": r.algorithm}
                for r in results
            ],
            "is_duplicate": duplicate is not None,
            "duplicate_of": str(duplicate.document_id) if duplicate else None,
        }
        return Completed(
            details=[r.model_dump(mode="json") for r in results],
            fields={"similarity_data": similarity_data},
        )

    async def _stage_translation(self, document: Document, opts: ProcessingOptions) -> StageOutcome:
        results = await self._collaborators.translator.translate_to_many(
            document.id, opts.target_languages, opts.translation_options,
        )
        translated_at = _utcnow().isoformat()
        return Completed(
            details=[asdict(r) for r in results],
            fields={
                "translation_data": {
                    "original_language": results[0].source_language if results else "unknown",
                    "available_translations": [
                        {
                            "language":        r.target_language,
                            "translated_text": r.translated_text,
                            "translated_at":   translated_at,
                            "translated_by":   r.provider,
                        }
                        for r in results
                    ],
                },
            },
        )

    async def _stage_compliance(self, document: Document, opts: ProcessingOptions) -> StageOutcome:
        report = await self._collaborators.compliance.check(document.id, opts.compliance_options)
        data = {**asdict(report), "checked_at": _utcnow().isoformat()}
        # A non-compliant report is a finding, not a stage failure.
        return Completed(details=asdict(report), fields={"compliance_data": data})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _set_document(self, document: Document, **fields: Any) -> None:
        """Write through the store and mirror onto the in-memory row so later stages see it."""
        await self._store.update_document(document.id, **fields)
        for name, value in fields.items():
            setattr(document, name, value)

    async def _cancel_requested(self, job: ProcessingJob) -> bool:
        current = await self._store.get_job(job.id)
        return bool(current is not None and current.cancel_requested)

    @staticmethod
    def _result_from_job(job: ProcessingJob) -> ProcessingResult:
        payload = job.result or {}
        steps = [StageResult.model_validate(s) for s in payload.get("steps", [])]
        summary = (
            ProcessingSummary.model_validate(payload["summary"])
            if payload.get("summary")
            else ProcessingSummary.from_steps(steps, job.total_processing_time or 0)
        )
        return ProcessingResult(
            document_id=job.document_id,
            job_id=job.id,
            status=ProcessingStatus(job.status),
            steps=steps,
            summary=summary,
            retry_count=job.retry_count,
        )
