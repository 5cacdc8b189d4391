"""
SQLAlchemy ORM Models — Documents, Processing Jobs & Similarity Cache

Using SQLAlchemy mapped classes (2.x style) for full async support.

JSON payload columns use JSONB on PostgreSQL and plain JSON elsewhere
(the SQLite test database), so the same models back both.

State columns store the string values of the enums below. Only the
pipeline orchestrator writes Document.status / Document.processing_status.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class DocumentType(str, Enum):
    PDF     = "pdf"
    DOCX    = "docx"
    DOC     = "doc"
    XLSX    = "xlsx"
    XLS     = "xls"
    PPTX    = "pptx"
    PPT     = "ppt"
    TXT     = "txt"
    CSV     = "csv"
    JSON    = "json"
    XML     = "xml"
    HTML    = "html"
    IMAGE   = "image"
    UNKNOWN = "unknown"


class DocumentStatus(str, Enum):
    UPLOADING  = "uploading"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"
    ARCHIVED   = "archived"


class ProcessingStatus(str, Enum):
    """
    Pipeline state of a document / job.
    Transitions: pending → <stage state>* → completed | failed
    """
    PENDING             = "pending"
    OCR_PROCESSING      = "ocr_processing"
    PARSING             = "parsing"
    CLASSIFYING         = "classifying"
    EXTRACTING          = "extracting"
    INDEXING            = "indexing"
    TRANSLATING         = "translating"
    COMPLIANCE_CHECKING = "compliance_checking"
    COMPLETED           = "completed"
    FAILED              = "failed"


# States in which a job counts as actively running.
IN_PROGRESS_STATUSES: tuple[ProcessingStatus, ...] = (
    ProcessingStatus.OCR_PROCESSING,
    ProcessingStatus.PARSING,
    ProcessingStatus.CLASSIFYING,
    ProcessingStatus.EXTRACTING,
    ProcessingStatus.INDEXING,
    ProcessingStatus.TRANSLATING,
    ProcessingStatus.COMPLIANCE_CHECKING,
)


class DocumentCategory(str, Enum):
    CONTRACT            = "contract"
    INVOICE             = "invoice"
    RECEIPT             = "receipt"
    ID_DOCUMENT         = "id_document"
    FINANCIAL_STATEMENT = "financial_statement"
    LEGAL_DOCUMENT      = "legal_document"
    REPORT              = "report"
    PRESENTATION        = "presentation"
    SPREADSHEET         = "spreadsheet"
    EMAIL               = "email"
    IMAGE               = "image"
    OTHER               = "other"


def _in_check(column: str, enum_cls: type[Enum], name: str) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=name)


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file and everything the pipeline learned about it.

    State machine (status column):
        uploading  — record created, bytes stored, processing not yet started
        processing — a pipeline run holds the processing lease
        completed  — every executed stage succeeded
        failed     — at least one stage failed, or the run was cancelled
        archived   — retired by the owner

    processing_lease is a per-run token; a run may only start when the
    column is NULL (or the lease is older than the configured TTL).
    """

    __tablename__ = "documents"
    __table_args__ = (
        _in_check("status", DocumentStatus, "documents_status_check"),
        _in_check("processing_status", ProcessingStatus, "documents_processing_status_check"),
        Index("idx_documents_user_id",    "user_id"),
        Index("idx_documents_category",   "category"),
        Index("idx_documents_created_at", "created_at"),
        Index("idx_documents_processing_status", "processing_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Owner: candidate selection for similarity groups by this
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Content location of the stored upload",
    )
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 hex digest of the raw file content",
    )
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    document_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default=DocumentType.UNKNOWN.value,
    )
    category: Mapped[str] = mapped_column(
        String(32), nullable=False, default=DocumentCategory.OTHER.value,
    )
    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Pipeline state machine
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=DocumentStatus.UPLOADING.value,
    )
    processing_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ProcessingStatus.PENDING.value,
    )
    processing_lease: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_acquired_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Stage outputs
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    key_information: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    translation_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    similarity_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    compliance_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    processing_errors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    processing_metrics: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} type={self.document_type} "
            f"status={self.status} file={self.original_name!r}>"
        )


# ---------------------------------------------------------------------------
# ProcessingJob model: document_processing_jobs
# ---------------------------------------------------------------------------

class ProcessingJob(Base):
    """
    One pipeline run (and its retries) for a document.

    result holds {"steps": [StageResult...], "summary": {...}} and is
    rewritten after every stage. parameters holds the run's options so a
    retry replays exactly what the first attempt asked for.
    """

    __tablename__ = "document_processing_jobs"
    __table_args__ = (
        _in_check("status", ProcessingStatus, "jobs_status_check"),
        CheckConstraint("retry_count <= max_retries", name="jobs_retry_bound_check"),
        Index("idx_jobs_document_id", "document_id"),
        Index("idx_jobs_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_type: Mapped[str] = mapped_column(String(100), nullable=False, default="full_processing")
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ProcessingStatus.PENDING.value,
    )
    parameters: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_processing_time: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, comment="Wall-clock ms of the last finished run",
    )

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob id={self.id} doc={self.document_id} "
            f"status={self.status} retries={self.retry_count}/{self.max_retries}>"
        )


# ---------------------------------------------------------------------------
# SimilarityCacheEntry model: document_similarity_cache
# ---------------------------------------------------------------------------

class SimilarityCacheEntry(Base):
    """
    Pairwise similarity result, keyed by the unordered document pair.

    document_id_1 < document_id_2 (string order) always holds, so a lookup
    for (A, B) and (B, A) hits the same row.
    """

    __tablename__ = "document_similarity_cache"
    __table_args__ = (
        UniqueConstraint(
            "document_id_1", "document_id_2", "algorithm",
            name="uq_similarity_cache_pair_algorithm",
        ),
        CheckConstraint("similarity >= 0 AND similarity <= 1", name="similarity_range_check"),
        Index("idx_similarity_cache_expires_at", "expires_at"),
        Index("idx_similarity_cache_computed_at", "computed_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id_1: Mapped[str] = mapped_column(String(36), nullable=False)
    document_id_2: Mapped[str] = mapped_column(String(36), nullable=False)
    algorithm: Mapped[str] = mapped_column(String(50), nullable=False)
    similarity: Mapped[float] = mapped_column(Float, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<SimilarityCacheEntry {self.document_id_1}~{self.document_id_2} "
            f"algorithm={self.algorithm} similarity={self.similarity:.4f}>"
        )
