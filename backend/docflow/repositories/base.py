"""
Document Store — Abstract Base

The pipeline orchestrator and the similarity engine only speak this
protocol; persistence mechanics live behind it. SqlDocumentStore is the
production implementation, tests use an in-memory one.

Contract (enforced by ALL implementations):
  - update_document / update_job apply only the given fields.
  - acquire_lease is atomic: at most one caller holds a document's lease,
    except that a lease older than its TTL may be taken over.
  - Similarity cache entries are keyed by (document_id_1, document_id_2,
    algorithm) with the two ids already in canonical order; writes are
    upserts, last writer wins.
  - Freshness comparisons (lease TTL, cache age, expiry) are evaluated by
    the store against the timestamps it is handed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from docflow.models.documents import (
    Document,
    ProcessingJob,
    ProcessingStatus,
    SimilarityCacheEntry,
)


class DocumentStore(ABC):

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_by_id(self, document_id: UUID) -> Document | None:
        """Return the document, or None when it does not exist."""

    @abstractmethod
    async def create_document(self, document: Document) -> Document:
        """Persist a new document row and return it with defaults applied."""

    @abstractmethod
    async def update_document(self, document_id: UUID, **fields: Any) -> None:
        """Write the given columns of one document."""

    @abstractmethod
    async def acquire_lease(
        self,
        document_id: UUID,
        token: str,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        """
        Take the processing lease when it is free or was acquired before
        `stale_before`. Returns False when another holder keeps it.
        """

    @abstractmethod
    async def release_lease(self, document_id: UUID, token: str) -> None:
        """Clear the lease only if `token` still holds it."""

    @abstractmethod
    async def find_candidates(
        self,
        document: Document,
        recent_since: datetime,
        limit: int,
    ) -> list[Document]:
        """
        Documents other than `document` sharing its owner, or its category,
        or created at/after `recent_since`; newest first, at most `limit`.
        """

    @abstractmethod
    async def count_documents(self) -> int: ...

    @abstractmethod
    async def count_documents_by_processing_status(self) -> dict[str, int]: ...

    # ------------------------------------------------------------------
    # Processing jobs
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_job(
        self,
        document_id: UUID,
        job_type: str,
        parameters: dict,
        max_retries: int,
    ) -> ProcessingJob: ...

    @abstractmethod
    async def get_job(self, job_id: UUID) -> ProcessingJob | None: ...

    @abstractmethod
    async def update_job(self, job_id: UUID, **fields: Any) -> None: ...

    @abstractmethod
    async def latest_job(
        self,
        document_id: UUID,
        status: ProcessingStatus | None = None,
    ) -> ProcessingJob | None:
        """Most recently created job for the document, optionally filtered by status."""

    @abstractmethod
    async def list_jobs(
        self,
        statuses: Sequence[ProcessingStatus],
        limit: int,
        newest_first: bool,
    ) -> list[ProcessingJob]: ...

    @abstractmethod
    async def count_jobs(self, status: ProcessingStatus) -> int: ...

    @abstractmethod
    async def average_processing_time(self) -> float:
        """Mean total_processing_time of completed jobs; 0.0 when there are none."""

    @abstractmethod
    async def delete_failed_jobs_before(self, cutoff: datetime) -> int:
        """Delete FAILED jobs created before `cutoff`; returns the number removed."""

    # ------------------------------------------------------------------
    # Similarity cache
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_cached_similarity(
        self,
        document_id_1: str,
        document_id_2: str,
        algorithm: str,
        computed_since: datetime,
        now: datetime,
    ) -> SimilarityCacheEntry | None:
        """Entry computed at/after `computed_since` and not expired at `now`."""

    @abstractmethod
    async def put_cached_similarity(
        self,
        document_id_1: str,
        document_id_2: str,
        algorithm: str,
        similarity: float,
        details: dict,
        computed_at: datetime,
        expires_at: datetime,
    ) -> None: ...

    @abstractmethod
    async def purge_expired_similarity(self, now: datetime) -> int:
        """Delete cache entries whose expires_at is before `now`."""

    @abstractmethod
    async def recent_similarity_entries(self, limit: int) -> list[SimilarityCacheEntry]:
        """Latest entries by computed_at, newest first."""
