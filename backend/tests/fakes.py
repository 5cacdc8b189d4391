"""
Test doubles shared across unit and integration tests.

InMemoryDocumentStore honours the DocumentStore contract with plain dicts,
so orchestrator and similarity tests run without a database. The fake
engine and collaborators return canned results and count their calls.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from docflow.collaborators.base import (
    ClassificationResult,
    ComplianceChecker,
    ComplianceReport,
    ContentExtractor,
    DocumentClassifier,
    ExtractionResult,
    ParseResult,
    TranslationResult,
    Translator,
)
from docflow.collaborators.parser import DefaultDocumentParser
from docflow.models.documents import (
    Document,
    DocumentCategory,
    DocumentStatus,
    DocumentType,
    ProcessingJob,
    ProcessingStatus,
    SimilarityCacheEntry,
)
from docflow.processing.ocr import RecognitionEngine, RecognitionResult
from docflow.repositories.base import DocumentStore


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Store
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryDocumentStore(DocumentStore):

    def __init__(self) -> None:
        self.documents: dict[uuid.UUID, Document] = {}
        self.jobs: dict[uuid.UUID, ProcessingJob] = {}
        self.cache: dict[tuple[str, str, str], SimilarityCacheEntry] = {}
        self.cache_writes = 0
        self.document_updates: list[tuple[uuid.UUID, dict[str, Any]]] = []

    # ---- documents -----------------------------------------------------

    async def find_by_id(self, document_id):
        return self.documents.get(document_id)

    async def create_document(self, document: Document) -> Document:
        if document.id is None:
            document.id = uuid.uuid4()
        if document.created_at is None:
            document.created_at = utcnow()
        self.documents[document.id] = document
        return document

    async def update_document(self, document_id, **fields):
        self.document_updates.append((document_id, dict(fields)))
        document = self.documents.get(document_id)
        if document is None:
            return
        for name, value in fields.items():
            setattr(document, name, value)

    async def acquire_lease(self, document_id, token, now, stale_before) -> bool:
        document = self.documents.get(document_id)
        if document is None:
            return False
        if document.processing_lease is None or document.lease_acquired_at < stale_before:
            document.processing_lease = token
            document.lease_acquired_at = now
            return True
        return False

    async def release_lease(self, document_id, token) -> None:
        document = self.documents.get(document_id)
        if document is not None and document.processing_lease == token:
            document.processing_lease = None
            document.lease_acquired_at = None

    async def find_candidates(self, document, recent_since, limit):
        matches = [
            d for d in self.documents.values()
            if d.id != document.id and (
                d.user_id == document.user_id
                or d.category == document.category
                or d.created_at >= recent_since
            )
        ]
        matches.sort(key=lambda d: d.created_at, reverse=True)
        return matches[:limit]

    async def count_documents(self) -> int:
        return len(self.documents)

    async def count_documents_by_processing_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for d in self.documents.values():
            counts[d.processing_status] = counts.get(d.processing_status, 0) + 1
        return counts

    # ---- jobs ----------------------------------------------------------

    async def create_job(self, document_id, job_type, parameters, max_retries):
        job = ProcessingJob(
            id=uuid.uuid4(),
            document_id=document_id,
            job_type=job_type,
            status=ProcessingStatus.PENDING.value,
            parameters=parameters,
            retry_count=0,
            max_retries=max_retries,
            cancel_requested=False,
            created_at=utcnow() + timedelta(microseconds=len(self.jobs)),
        )
        self.jobs[job.id] = job
        return job

    async def get_job(self, job_id):
        return self.jobs.get(job_id)

    async def update_job(self, job_id, **fields):
        job = self.jobs.get(job_id)
        if job is None:
            return
        for name, value in fields.items():
            setattr(job, name, value)

    async def latest_job(self, document_id, status=None):
        jobs = [
            j for j in self.jobs.values()
            if j.document_id == document_id and (status is None or j.status == status.value)
        ]
        return max(jobs, key=lambda j: j.created_at, default=None)

    async def list_jobs(self, statuses: Sequence[ProcessingStatus], limit, newest_first):
        wanted = {s.value for s in statuses}
        jobs = sorted(
            (j for j in self.jobs.values() if j.status in wanted),
            key=lambda j: j.created_at,
            reverse=newest_first,
        )
        return jobs[:limit]

    async def count_jobs(self, status) -> int:
        return sum(1 for j in self.jobs.values() if j.status == status.value)

    async def average_processing_time(self) -> float:
        times = [
            j.total_processing_time for j in self.jobs.values()
            if j.status == ProcessingStatus.COMPLETED.value and j.total_processing_time is not None
        ]
        return sum(times) / len(times) if times else 0.0

    async def delete_failed_jobs_before(self, cutoff) -> int:
        doomed = [
            j.id for j in self.jobs.values()
            if j.status == ProcessingStatus.FAILED.value and j.created_at < cutoff
        ]
        for job_id in doomed:
            del self.jobs[job_id]
        return len(doomed)

    # ---- similarity cache ---------------------------------------------

    async def get_cached_similarity(self, document_id_1, document_id_2, algorithm, computed_since, now):
        entry = self.cache.get((document_id_1, document_id_2, algorithm))
        if entry is None or entry.computed_at < computed_since or entry.expires_at <= now:
            return None
        return entry

    async def put_cached_similarity(
        self, document_id_1, document_id_2, algorithm, similarity, details, computed_at, expires_at,
    ):
        self.cache_writes += 1
        self.cache[(document_id_1, document_id_2, algorithm)] = SimilarityCacheEntry(
            id=uuid.uuid4(),
            document_id_1=document_id_1,
            document_id_2=document_id_2,
            algorithm=algorithm,
            similarity=similarity,
            details=details,
            computed_at=computed_at,
            expires_at=expires_at,
        )

    async def purge_expired_similarity(self, now) -> int:
        expired = [k for k, e in self.cache.items() if e.expires_at < now]
        for key in expired:
            del self.cache[key]
        return len(expired)

    async def recent_similarity_entries(self, limit):
        return sorted(self.cache.values(), key=lambda e: e.computed_at, reverse=True)[:limit]


def make_document(
    *,
    text: str | None = "",
    document_type: DocumentType = DocumentType.TXT,
    category: DocumentCategory = DocumentCategory.OTHER,
    user_id: uuid.UUID | None = None,
    file_path: str = "/tmp/docflow-test/doc.txt",
    file_size: int = 1024,
    metadata: dict | None = None,
    created_at: datetime | None = None,
) -> Document:
    """Transient Document with every column the pipeline reads populated."""
    return Document(
        id=uuid.uuid4(),
        user_id=user_id or uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"),
        original_name=file_path.rsplit("/", 1)[-1],
        file_path=file_path,
        file_size=file_size,
        file_hash="0" * 64,
        mime_type=None,
        document_type=document_type.value,
        category=category.value,
        tags=[],
        status=DocumentStatus.UPLOADING.value,
        processing_status=ProcessingStatus.PENDING.value,
        processing_lease=None,
        lease_acquired_at=None,
        extracted_text=text,
        extracted_metadata=metadata,
        processing_errors=[],
        processing_metrics={},
        created_at=created_at or utcnow(),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Recognition engine
# ─────────────────────────────────────────────────────────────────────────────

class FakeEngine(RecognitionEngine):
    """Returns canned text; `gate` (threading.Event) lets a test hold a call open."""

    def __init__(self, languages=("eng",), text: str = "recognized text", confidence: float = 0.92):
        self.languages = tuple(languages)
        self.text = text
        self.confidence = confidence
        self.calls: list[tuple[str, list[str]]] = []
        self.terminated = False
        self.gate: threading.Event | None = None

    def recognize(self, image_path, languages, preserve_layout=False) -> RecognitionResult:
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self.calls.append((image_path, list(languages)))
        return RecognitionResult(text=self.text, confidence=self.confidence, language=languages[0])

    def terminate(self) -> None:
        self.terminated = True


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators
# ─────────────────────────────────────────────────────────────────────────────

class FakeParser(DefaultDocumentParser):

    def __init__(self, text: str = "parsed contract text about payment terms") -> None:
        self.text = text
        self.calls = 0

    async def parse(self, path, document_type, options=None) -> ParseResult:
        self.calls += 1
        await asyncio.sleep(0)
        return ParseResult(
            text=self.text,
            metadata={"word_count": len(self.text.split()), "page_count": 1, "structure": {"headings": []}},
            structure={"headings": []},
        )


class FakeClassifier(DocumentClassifier):

    def __init__(self, category: str = "contract") -> None:
        self.category = category
        self.seen_text: str | None = None

    async def classify(self, document_id, text, options=None) -> ClassificationResult:
        self.seen_text = text
        return ClassificationResult(category=self.category, confidence=0.88, tags=["legal", "signed"])


class FakeExtractor(ContentExtractor):

    async def extract_content(self, document_id, text, options=None) -> ExtractionResult:
        return ExtractionResult(
            entities=[{"type": "organization", "value": "Acme Corp"}],
            keywords=["payment", "terms"],
            sentiment={"label": "neutral", "score": 0.0},
            topics=["finance"],
            summary="A contract about payment terms.",
        )


class FakeTranslator(Translator):

    async def translate_to_many(self, document_id, target_languages, options=None):
        return [
            TranslationResult(
                source_language="en",
                target_language=lang,
                translated_text=f"[{lang}] text",
                provider="fake",
            )
            for lang in target_languages
        ]


class FakeCompliance(ComplianceChecker):

    def __init__(self, overall_status: str = "compliant") -> None:
        self.overall_status = overall_status

    async def check(self, document_id, options=None) -> ComplianceReport:
        return ComplianceReport(overall_status=self.overall_status, score=0.97, checks=[{"rule": "pii", "passed": True}])


class ExplodingClassifier(DocumentClassifier):

    async def classify(self, document_id, text, options=None):
        raise RuntimeError("classifier backend unavailable")
