"""
Document Processing — Pydantic Schemas

Covers the data contracts of the processing core:
  - ProcessingOptions: which pipeline stages run, plus per-stage parameters
  - StageResult / ProcessingSummary / ProcessingResult: the per-run report
    persisted in ProcessingJob.result and returned to callers
  - ProcessingQueue / ProcessingStatistics: operational introspection
  - SimilarityOptions / SimilarityResult: the duplicate-detection contract
  - Structured error bodies for callers that surface failures

Design decisions:
  - StageResult.status is one of pending | in_progress | completed | failed.
  - All timestamps are timezone-aware UTC datetimes.
  - Options are immutable once a run starts; ProcessingJob.parameters stores
    ProcessingOptions.model_dump(mode="json") so a retry replays them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from docflow.core.exceptions import (
    ConflictError,
    DocumentNotFoundError,
    FileTooLargeError,
    JobNotFoundError,
    MaxRetriesExceededError,
    UnsupportedDocumentError,
)
from docflow.models.documents import ProcessingStatus


# ---------------------------------------------------------------------------
# Stage names: fixed pipeline order
# ---------------------------------------------------------------------------

STAGE_OCR            = "OCR"
STAGE_PARSING        = "Parsing"
STAGE_CLASSIFICATION = "Classification"
STAGE_EXTRACTION     = "Content Extraction"
STAGE_SIMILARITY     = "Similarity Detection"
STAGE_TRANSLATION    = "Translation"
STAGE_COMPLIANCE     = "Compliance Check"

PIPELINE_ORDER: tuple[str, ...] = (
    STAGE_OCR,
    STAGE_PARSING,
    STAGE_CLASSIFICATION,
    STAGE_EXTRACTION,
    STAGE_SIMILARITY,
    STAGE_TRANSLATION,
    STAGE_COMPLIANCE,
)

StageStatus = Literal["pending", "in_progress", "completed", "failed"]

SimilarityAlgorithm = Literal["cosine", "jaccard", "levenshtein", "euclidean", "manhattan"]


# ---------------------------------------------------------------------------
# Pipeline options
# ---------------------------------------------------------------------------

class ProcessingOptions(BaseModel):
    """Which stages run for one pipeline invocation. Every stage defaults to on."""

    model_config = ConfigDict(frozen=True)

    enable_ocr:                  bool = True
    enable_parsing:              bool = True
    enable_classification:       bool = True
    enable_content_extraction:   bool = True
    enable_similarity_detection: bool = True
    enable_translation:          bool = True
    enable_compliance_check:     bool = True

    target_languages: list[str] = Field(
        default_factory=list,
        description="Translation runs only when at least one language is given",
    )

    ocr_options:            dict[str, Any] = Field(default_factory=dict)
    classification_options: dict[str, Any] = Field(default_factory=dict)
    extraction_options:     dict[str, Any] = Field(default_factory=dict)
    similarity_options:     dict[str, Any] = Field(default_factory=dict)
    translation_options:    dict[str, Any] = Field(default_factory=dict)
    compliance_options:     dict[str, Any] = Field(default_factory=dict)

    @field_validator("target_languages")
    @classmethod
    def normalise_languages(cls, v: list[str]) -> list[str]:
        return [lang.strip().lower() for lang in v if lang and lang.strip()]


# ---------------------------------------------------------------------------
# Per-run report
# ---------------------------------------------------------------------------

class StageResult(BaseModel):
    name:        str
    status:      StageStatus
    start_time:  datetime
    end_time:    datetime | None = None
    duration_ms: int | None = None
    error:       str | None = None
    details:     Any = None


class ProcessingSummary(BaseModel):
    total_steps:           int = 0
    completed_steps:       int = 0
    failed_steps:          int = 0
    total_processing_time: int = Field(0, description="Wall-clock milliseconds for the run")
    success:               bool = False

    @classmethod
    def from_steps(cls, steps: list[StageResult], total_processing_time: int) -> "ProcessingSummary":
        completed = sum(1 for s in steps if s.status == "completed")
        failed = sum(1 for s in steps if s.status == "failed")
        return cls(
            total_steps=len(steps),
            completed_steps=completed,
            failed_steps=failed,
            total_processing_time=total_processing_time,
            success=failed == 0,
        )


class ProcessingResult(BaseModel):
    """Returned by process() / get_processing_status()."""
    document_id: UUID
    job_id:      UUID | None = None
    status:      ProcessingStatus
    steps:       list[StageResult] = Field(default_factory=list)
    summary:     ProcessingSummary = Field(default_factory=ProcessingSummary)
    retry_count: int = 0


# ---------------------------------------------------------------------------
# Operational introspection
# ---------------------------------------------------------------------------

class JobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:            UUID
    document_id:   UUID
    job_type:      str
    status:        ProcessingStatus
    retry_count:   int
    max_retries:   int
    error_message: str | None = None
    created_at:    datetime | None = None
    started_at:    datetime | None = None
    completed_at:  datetime | None = None


class ProcessingQueue(BaseModel):
    pending:    list[JobSummary] = Field(default_factory=list)
    processing: list[JobSummary] = Field(default_factory=list)
    failed:     list[JobSummary] = Field(default_factory=list)


class ProcessingStatistics(BaseModel):
    total_documents:         int
    by_status:               dict[str, int]
    average_processing_time: float = Field(..., description="Mean total_processing_time (ms) of completed jobs")
    success_rate:            float = Field(..., ge=0.0, le=1.0)
    queue_length:            int


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

class SimilarityThresholds(BaseModel):
    duplicate: float = Field(0.95, ge=0.0, le=1.0)
    similar:   float = Field(0.8,  ge=0.0, le=1.0)
    related:   float = Field(0.6,  ge=0.0, le=1.0)


class SimilarityWeights(BaseModel):
    text:      float = Field(0.7, ge=0.0)
    metadata:  float = Field(0.2, ge=0.0)
    structure: float = Field(0.1, ge=0.0)

    @model_validator(mode="after")
    def at_least_one_weight(self) -> "SimilarityWeights":
        if self.text + self.metadata + self.structure <= 0:
            raise ValueError("At least one similarity weight must be positive")
        return self


class SimilarityOptions(BaseModel):
    algorithms:        list[SimilarityAlgorithm] = Field(
        default_factory=lambda: ["cosine", "jaccard", "levenshtein"],
        min_length=1,
    )
    thresholds:        SimilarityThresholds = Field(default_factory=SimilarityThresholds)
    weights:           SimilarityWeights = Field(default_factory=SimilarityWeights)
    include_metadata:  bool = True
    include_structure: bool = True
    cache_results:     bool = True


class SimilarityDetails(BaseModel):
    text_similarity:      float = 0.0
    metadata_similarity:  float | None = None
    structure_similarity: float | None = None


class SimilarityResult(BaseModel):
    document_id:         UUID
    similarity:          float = Field(..., ge=0.0, le=1.0)
    algorithm:           SimilarityAlgorithm
    details:             SimilarityDetails
    is_duplicate:        bool
    duplicate_threshold: float


class SimilarityStatistics(BaseModel):
    total_comparisons:  int
    average_similarity: float
    duplicate_count:    int
    algorithm_usage:    dict[str, int]
    cache_hit_rate:     float


# ---------------------------------------------------------------------------
# Upload response
# ---------------------------------------------------------------------------

class DocumentUploadResponse(BaseModel):
    """Returned by IngestionService.ingest once the file is stored and queued."""
    document_id:       UUID     = Field(..., description="Server-generated document UUID")
    status:            str      = Field("uploading", description="Document lifecycle status")
    checksum:          str      = Field(..., description="SHA-256 hex digest of the uploaded file")
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    document_type:     str
    document_name:     str
    size_bytes:        int
    task_id:           str | None = Field(None, description="Celery task id of the queued pipeline run")
    created_at:        datetime


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Input field that caused the error, if applicable")
    message: str
    code:    str = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class ProcessingErrors:
    """Factories for every documented error case."""

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
        )

    @staticmethod
    def job_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="JOB_NOT_FOUND",
            message=f"No processing job exists for document '{document_id}'.",
        )

    @staticmethod
    def max_retries_exceeded(document_id: UUID, retry_count: int, max_retries: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="MAX_RETRIES_EXCEEDED",
            message=f"Document '{document_id}' cannot be retried again.",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Retry count {retry_count} has reached the limit of {max_retries}.",
                    code="MAX_RETRIES_EXCEEDED",
                )
            ],
        )

    @staticmethod
    def already_processing(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="ALREADY_PROCESSING",
            message=f"Document '{document_id}' is already being processed.",
        )

    @staticmethod
    def unsupported_document(reason: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_DOCUMENT",
            message="Document cannot be accepted.",
            details=[ErrorDetail(field="file", message=reason, code="UNSUPPORTED_DOCUMENT")],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        max_mb = limit_bytes // (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {max_mb} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @classmethod
    def from_exception(cls, exc: Exception) -> ErrorResponse:
        """Envelope for a core exception; anything unrecognised is INTERNAL_ERROR."""
        if isinstance(exc, DocumentNotFoundError):
            return cls.document_not_found(exc.document_id)
        if isinstance(exc, JobNotFoundError):
            return cls.job_not_found(exc.document_id)
        if isinstance(exc, MaxRetriesExceededError):
            return cls.max_retries_exceeded(exc.document_id, exc.retry_count, exc.max_retries)
        if isinstance(exc, ConflictError):
            return cls.already_processing(exc.document_id)
        if isinstance(exc, FileTooLargeError):
            return cls.file_too_large(exc.size_bytes, exc.limit_bytes)
        if isinstance(exc, UnsupportedDocumentError):
            return cls.unsupported_document(str(exc))
        return ErrorResponse(error_code="INTERNAL_ERROR", message="An unexpected error occurred.")
