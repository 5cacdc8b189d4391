"""
SQLAlchemy-backed DocumentStore.

Every method runs in its own short transaction obtained from the session
factory; returned ORM objects are detached (expire_on_commit=False) and
safe to read after the call returns.

Lease acquisition and the similarity-cache upsert are single statements so
concurrent pipeline runs and workers race on the database, not in Python.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docflow.db.session import session_scope
from docflow.models.documents import (
    Document,
    ProcessingJob,
    ProcessingStatus,
    SimilarityCacheEntry,
)
from docflow.repositories.base import DocumentStore

logger = logging.getLogger(__name__)


class SqlDocumentStore(DocumentStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def find_by_id(self, document_id: UUID) -> Document | None:
        async with self._session() as db:
            return await db.get(Document, document_id)

    async def create_document(self, document: Document) -> Document:
        async with self._session() as db:
            db.add(document)
            await db.flush()
            await db.refresh(document)
        logger.debug("Document row created | doc=%s", document.id)
        return document

    async def update_document(self, document_id: UUID, **fields: Any) -> None:
        if not fields:
            return
        async with self._session() as db:
            await db.execute(
                update(Document).where(Document.id == document_id).values(**fields)
            )

    async def acquire_lease(
        self,
        document_id: UUID,
        token: str,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        stmt = (
            update(Document)
            .where(
                Document.id == document_id,
                or_(
                    Document.processing_lease.is_(None),
                    Document.lease_acquired_at < stale_before,
                ),
            )
            .values(processing_lease=token, lease_acquired_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
        acquired = result.rowcount == 1
        if not acquired:
            logger.info("Lease busy | doc=%s", document_id)
        return acquired

    async def release_lease(self, document_id: UUID, token: str) -> None:
        stmt = (
            update(Document)
            .where(Document.id == document_id, Document.processing_lease == token)
            .values(processing_lease=None, lease_acquired_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            await db.execute(stmt)

    async def find_candidates(
        self,
        document: Document,
        recent_since: datetime,
        limit: int,
    ) -> list[Document]:
        stmt = (
            select(Document)
            .where(
                Document.id != document.id,
                or_(
                    Document.user_id == document.user_id,
                    Document.category == document.category,
                    Document.created_at >= recent_since,
                ),
            )
            .order_by(Document.created_at.desc())
            .limit(limit)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def count_documents(self) -> int:
        async with self._session() as db:
            return await db.scalar(select(func.count()).select_from(Document)) or 0

    async def count_documents_by_processing_status(self) -> dict[str, int]:
        stmt = select(Document.processing_status, func.count()).group_by(Document.processing_status)
        async with self._session() as db:
            rows = (await db.execute(stmt)).all()
        return {status: count for status, count in rows}

    # ------------------------------------------------------------------
    # Processing jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        document_id: UUID,
        job_type: str,
        parameters: dict,
        max_retries: int,
    ) -> ProcessingJob:
        job = ProcessingJob(
            document_id=document_id,
            job_type=job_type,
            status=ProcessingStatus.PENDING.value,
            parameters=parameters,
            retry_count=0,
            max_retries=max_retries,
            cancel_requested=False,
        )
        async with self._session() as db:
            db.add(job)
            await db.flush()
            await db.refresh(job)
        return job

    async def get_job(self, job_id: UUID) -> ProcessingJob | None:
        async with self._session() as db:
            return await db.get(ProcessingJob, job_id)

    async def update_job(self, job_id: UUID, **fields: Any) -> None:
        if not fields:
            return
        async with self._session() as db:
            await db.execute(
                update(ProcessingJob).where(ProcessingJob.id == job_id).values(**fields)
            )

    async def latest_job(
        self,
        document_id: UUID,
        status: ProcessingStatus | None = None,
    ) -> ProcessingJob | None:
        stmt = select(ProcessingJob).where(ProcessingJob.document_id == document_id)
        if status is not None:
            stmt = stmt.where(ProcessingJob.status == status.value)
        stmt = stmt.order_by(ProcessingJob.created_at.desc()).limit(1)
        async with self._session() as db:
            return (await db.execute(stmt)).scalars().first()

    async def list_jobs(
        self,
        statuses: Sequence[ProcessingStatus],
        limit: int,
        newest_first: bool,
    ) -> list[ProcessingJob]:
        order = ProcessingJob.created_at.desc() if newest_first else ProcessingJob.created_at.asc()
        stmt = (
            select(ProcessingJob)
            .where(ProcessingJob.status.in_([s.value for s in statuses]))
            .order_by(order)
            .limit(limit)
        )
        async with self._session() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def count_jobs(self, status: ProcessingStatus) -> int:
        stmt = select(func.count()).select_from(ProcessingJob).where(ProcessingJob.status == status.value)
        async with self._session() as db:
            return await db.scalar(stmt) or 0

    async def average_processing_time(self) -> float:
        stmt = select(func.avg(ProcessingJob.total_processing_time)).where(
            ProcessingJob.status == ProcessingStatus.COMPLETED.value,
            ProcessingJob.total_processing_time.is_not(None),
        )
        async with self._session() as db:
            value = await db.scalar(stmt)
        return float(value) if value is not None else 0.0

    async def delete_failed_jobs_before(self, cutoff: datetime) -> int:
        stmt = delete(ProcessingJob).where(
            ProcessingJob.status == ProcessingStatus.FAILED.value,
            ProcessingJob.created_at < cutoff,
        )
        async with self._session() as db:
            result = await db.execute(stmt)
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Similarity cache
    # ------------------------------------------------------------------

    async def get_cached_similarity(
        self,
        document_id_1: str,
        document_id_2: str,
        algorithm: str,
        computed_since: datetime,
        now: datetime,
    ) -> SimilarityCacheEntry | None:
        stmt = select(SimilarityCacheEntry).where(
            and_(
                SimilarityCacheEntry.document_id_1 == document_id_1,
                SimilarityCacheEntry.document_id_2 == document_id_2,
                SimilarityCacheEntry.algorithm == algorithm,
                SimilarityCacheEntry.computed_at >= computed_since,
                SimilarityCacheEntry.expires_at > now,
            )
        )
        async with self._session() as db:
            return (await db.execute(stmt)).scalars().first()

    async def put_cached_similarity(
        self,
        document_id_1: str,
        document_id_2: str,
        algorithm: str,
        similarity: float,
        details: dict,
        computed_at: datetime,
        expires_at: datetime,
    ) -> None:
        values = {
            "document_id_1": document_id_1,
            "document_id_2": document_id_2,
            "algorithm":     algorithm,
            "similarity":    similarity,
            "details":       details,
            "computed_at":   computed_at,
            "expires_at":    expires_at,
        }
        async with self._session() as db:
            dialect = db.get_bind().dialect.name
            insert_fn = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = insert_fn(SimilarityCacheEntry).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["document_id_1", "document_id_2", "algorithm"],
                set_={
                    "similarity":  stmt.excluded.similarity,
                    "details":     stmt.excluded.details,
                    "computed_at": stmt.excluded.computed_at,
                    "expires_at":  stmt.excluded.expires_at,
                },
            )
            await db.execute(stmt)

    async def purge_expired_similarity(self, now: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(SimilarityCacheEntry).where(SimilarityCacheEntry.expires_at < now)
            )
        return result.rowcount or 0

    async def recent_similarity_entries(self, limit: int) -> list[SimilarityCacheEntry]:
        stmt = (
            select(SimilarityCacheEntry)
            .order_by(SimilarityCacheEntry.computed_at.desc())
            .limit(limit)
        )
        async with self._session() as db:
            return list((await db.execute(stmt)).scalars().all())
