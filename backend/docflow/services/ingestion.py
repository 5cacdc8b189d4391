"""
Document Ingestion Service

Library entry point for upload callers (an HTTP handler, an import script).
Nothing inside the package calls it: the workers only consume the
process_document task it publishes. Callers build it with
IngestionService.from_settings(store) and await ingest().

Steps for a new upload:
  1. Validate the display name and the byte size
  2. Detect the document type (parser extension map) and MIME type
     (magic bytes first, extension fallback)
  3. Compute the SHA-256 content hash
  4. Write the bytes under upload_dir as <document_id><ext>
  5. Insert the Document (status=uploading, processing_status=pending)
  6. Publish the process_document task to the Celery broker
  7. Return DocumentUploadResponse

Invariants:
  - The stored file name is built server-side from the document id; the
    client filename is sanitized and kept only as original_name.
  - MIME type comes from the file content, not the client's header.
  - A broker failure does not fail the upload: the document is stored and
    can be queued again with process_document.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import mimetypes
import os
import re
import uuid
from datetime import datetime, timezone
from typing import BinaryIO

from docflow.collaborators.base import DocumentParser
from docflow.core.config import Settings, settings as default_settings
from docflow.core.exceptions import FileTooLargeError, UnsupportedDocumentError
from docflow.models.documents import (
    Document,
    DocumentCategory,
    DocumentStatus,
    DocumentType,
    ProcessingStatus,
)
from docflow.repositories.base import DocumentStore
from docflow.schemas.documents import DocumentUploadResponse, ProcessingOptions

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type helpers
# ---------------------------------------------------------------------------

# Checked against the first bytes of the file content
_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":                              "application/pdf",
    b"PK\x03\x04":                        "application/zip",  # OOXML container, refined by extension
    b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1":  "application/x-ole-storage",  # legacy .doc/.xls/.ppt
    b"\x89PNG\r\n\x1a\n":                 "image/png",
    b"\xff\xd8\xff":                      "image/jpeg",
    b"GIF87a":                            "image/gif",
    b"GIF89a":                            "image/gif",
    b"II*\x00":                           "image/tiff",
    b"MM\x00*":                           "image/tiff",
    b"BM":                                "image/bmp",
}

_CONTAINER_MIMES = frozenset({"application/zip", "application/x-ole-storage"})


def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def detect_mime_type(filename: str, file_head: bytes) -> str:
    """
    Magic bytes first; Office containers and text formats have no
    distinctive signature, so those fall back to the extension.
    """
    guessed, _ = mimetypes.guess_type(filename)
    for magic, mime in _MAGIC_BYTES.items():
        if file_head.startswith(magic):
            if mime in _CONTAINER_MIMES and guessed:
                return guessed
            return mime

    ext = _get_extension(filename)
    if ext in (".txt", ".md"):
        return "text/plain"
    return guessed or "application/octet-stream"


def sanitize_filename(filename: str) -> str:
    """Strip path components and replace unsafe characters."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200]


def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _write_file(path: str, data: bytes) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(data)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class IngestionService:
    """
    Stateless service object; all dependencies are injected.
    """

    def __init__(
        self,
        store:          DocumentStore,
        parser:         DocumentParser,
        task_publisher: "TaskPublisher",
        config:         Settings | None = None,
    ) -> None:
        self._store     = store
        self._parser    = parser
        self._publisher = task_publisher
        self._settings  = config or default_settings

    @classmethod
    def from_settings(cls, store: DocumentStore, config: Settings | None = None) -> "IngestionService":
        """Wire the configured parser and the Celery publisher."""
        from docflow.collaborators.factory import build_collaborators

        cfg = config or default_settings
        return cls(
            store=store,
            parser=build_collaborators(cfg).parser,
            task_publisher=TaskPublisher(),
            config=cfg,
        )

    async def ingest(
        self,
        filename: str,
        content:  bytes | BinaryIO,
        user_id:  uuid.UUID,
        options:  ProcessingOptions | dict | None = None,
    ) -> DocumentUploadResponse:
        """
        Store the upload and queue its pipeline run.
        Raises UnsupportedDocumentError / FileTooLargeError on invalid input.
        """
        original_name = (filename or "").strip()
        if not original_name or len(original_name) > 255:
            raise UnsupportedDocumentError(f"Invalid file name: {filename!r}")

        data = content if isinstance(content, bytes) else content.read()
        if not data:
            raise UnsupportedDocumentError(f"Empty upload: {original_name}")
        if len(data) > self._settings.max_upload_bytes:
            raise FileTooLargeError(len(data), self._settings.max_upload_bytes)

        document_type = self._parser.detect_type(original_name)
        if document_type == DocumentType.UNKNOWN:
            raise UnsupportedDocumentError(f"Unsupported file type: {original_name}")

        opts = options if isinstance(options, ProcessingOptions) else ProcessingOptions.model_validate(options or {})
        checksum    = compute_sha256(data)
        mime_type   = detect_mime_type(original_name, data[:8])
        document_id = uuid.uuid4()
        file_path   = os.path.join(
            self._settings.upload_dir,
            f"{document_id}{_get_extension(sanitize_filename(original_name))}",
        )

        logger.info(
            "Ingest start | user=%s file=%s type=%s size=%d sha256=%s",
            user_id, original_name, document_type.value, len(data), checksum,
        )

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write_file, file_path, data)

        document = await self._store.create_document(
            Document(
                id=document_id,
                user_id=user_id,
                original_name=original_name,
                file_path=file_path,
                file_size=len(data),
                file_hash=checksum,
                mime_type=mime_type,
                document_type=document_type.value,
                category=DocumentCategory.OTHER.value,
                tags=[],
                status=DocumentStatus.UPLOADING.value,
                processing_status=ProcessingStatus.PENDING.value,
                processing_errors=[],
                processing_metrics={},
            )
        )

        task_id: str | None = None
        try:
            task_id = await self._publisher.publish_processing_task(document.id, opts)
        except Exception as exc:
            # Non-fatal: the document is stored and can be queued again.
            logger.error("Failed to publish processing task | doc=%s error=%s", document.id, exc)

        return DocumentUploadResponse(
            document_id=document.id,
            status=DocumentStatus.UPLOADING.value,
            checksum=checksum,
            processing_status=ProcessingStatus.PENDING,
            document_type=document_type.value,
            document_name=original_name,
            size_bytes=len(data),
            task_id=task_id,
            created_at=document.created_at or datetime.now(timezone.utc),
        )


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery apply_async()
# Injected into IngestionService so it can be mocked in tests.
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    Sends pipeline tasks to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_processing_task(
        self,
        document_id: uuid.UUID,
        options: ProcessingOptions | None = None,
    ) -> str:
        from docflow.workers.tasks import process_document

        payload = (options or ProcessingOptions()).model_dump(mode="json")
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: process_document.apply_async(
                kwargs={"document_id": str(document_id), "options": payload},
                countdown=2,
            ),
        )
        logger.info("Processing task published | doc=%s task_id=%s", document_id, result.id)
        return result.id

    async def publish_retry_task(self, document_id: uuid.UUID) -> str:
        from docflow.workers.tasks import retry_failed_processing

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: retry_failed_processing.apply_async(kwargs={"document_id": str(document_id)}),
        )
        logger.info("Retry task published | doc=%s task_id=%s", document_id, result.id)
        return result.id
