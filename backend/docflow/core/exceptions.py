"""
Exception hierarchy for the processing core.

Only orchestration-level errors leave the pipeline orchestrator:
missing documents/jobs, exhausted retries, lease conflicts and store
failures. Anything raised inside a single stage is converted into a
failed StageResult at the stage boundary (see services/pipeline.py).
"""

from __future__ import annotations


class DocflowError(Exception):
    """Base exception for all processing errors."""


# ---------------------------------------------------------------------------
# NotFound
# ---------------------------------------------------------------------------

class DocumentNotFoundError(DocflowError):
    def __init__(self, document_id) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class JobNotFoundError(DocflowError):
    def __init__(self, document_id, detail: str = "Processing job not found") -> None:
        super().__init__(f"{detail} for document: {document_id}")
        self.document_id = document_id


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class StageFailure(DocflowError):
    """Raised by a stage to report a domain failure; never escapes process()."""


class MaxRetriesExceededError(DocflowError):
    def __init__(self, document_id, retry_count: int, max_retries: int) -> None:
        super().__init__(
            f"Maximum retries exceeded for document: {document_id} "
            f"({retry_count}/{max_retries})"
        )
        self.document_id = document_id
        self.retry_count = retry_count
        self.max_retries = max_retries


class ConflictError(DocflowError):
    """Another pipeline run currently holds the document's processing lease."""

    def __init__(self, document_id) -> None:
        super().__init__(f"Document is already being processed: {document_id}")
        self.document_id = document_id


# ---------------------------------------------------------------------------
# Recognition / similarity
# ---------------------------------------------------------------------------

class WorkerPoolClosedError(DocflowError):
    """The recognition pool has been shut down; no worker will become available."""


class RecognitionError(DocflowError):
    pass


class InsufficientDataError(DocflowError):
    pass


class UnsupportedAlgorithmError(DocflowError):
    def __init__(self, algorithm: str) -> None:
        super().__init__(f"Unsupported similarity algorithm: {algorithm}")
        self.algorithm = algorithm


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class UnsupportedDocumentError(DocflowError):
    pass


class FileTooLargeError(DocflowError):
    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.")
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
