"""
Default document parser — PDF, DOCX and plain-text formats.

PDF text and document info come from pypdf; DOCX paragraphs, headings and
tables from python-docx; text-like formats are decoded as UTF-8 with a
latin-1 fallback. Formats without a reader here (images, legacy Office
binaries, spreadsheets) return an empty ParseResult; their text comes from
the OCR stage.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from docflow.collaborators.base import DocumentParser, ParseResult
from docflow.core.exceptions import UnsupportedDocumentError
from docflow.models.documents import DocumentType

logger = logging.getLogger(__name__)

_EXTENSION_TYPES: dict[str, DocumentType] = {
    ".pdf":  DocumentType.PDF,
    ".docx": DocumentType.DOCX,
    ".doc":  DocumentType.DOC,
    ".xlsx": DocumentType.XLSX,
    ".xls":  DocumentType.XLS,
    ".pptx": DocumentType.PPTX,
    ".ppt":  DocumentType.PPT,
    ".txt":  DocumentType.TXT,
    ".md":   DocumentType.TXT,
    ".csv":  DocumentType.CSV,
    ".json": DocumentType.JSON,
    ".xml":  DocumentType.XML,
    ".html": DocumentType.HTML,
    ".htm":  DocumentType.HTML,
    ".png":  DocumentType.IMAGE,
    ".jpg":  DocumentType.IMAGE,
    ".jpeg": DocumentType.IMAGE,
    ".gif":  DocumentType.IMAGE,
    ".bmp":  DocumentType.IMAGE,
    ".tif":  DocumentType.IMAGE,
    ".tiff": DocumentType.IMAGE,
    ".webp": DocumentType.IMAGE,
}

_TEXT_TYPES = frozenset({
    DocumentType.TXT, DocumentType.CSV, DocumentType.JSON,
    DocumentType.XML, DocumentType.HTML,
})

_LINK_RE = re.compile(r"https?://[^\s<>\"')]+")
_WORD_RE = re.compile(r"\S+")


def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _base_metadata(text: str) -> dict[str, Any]:
    return {
        "word_count": len(_WORD_RE.findall(text)),
        "links":      sorted(set(_LINK_RE.findall(text))),
        "images":     [],
        "tables":     [],
        "structure":  {"headings": []},
    }


class DefaultDocumentParser(DocumentParser):

    def detect_type(self, filename: str) -> DocumentType:
        return _EXTENSION_TYPES.get(_get_extension(filename), DocumentType.UNKNOWN)

    async def parse(
        self,
        path: str,
        document_type: DocumentType,
        options: dict[str, Any] | None = None,
    ) -> ParseResult:
        document_type = DocumentType(document_type)
        loop = asyncio.get_running_loop()

        if document_type == DocumentType.PDF:
            result = await loop.run_in_executor(None, self._parse_pdf, path)
        elif document_type == DocumentType.DOCX:
            result = await loop.run_in_executor(None, self._parse_docx, path)
        elif document_type in _TEXT_TYPES:
            result = await loop.run_in_executor(None, self._parse_text, path)
        elif document_type == DocumentType.UNKNOWN:
            raise UnsupportedDocumentError(f"Cannot parse document of unknown type: {path}")
        else:
            logger.info("No text reader for type | type=%s path=%s", document_type.value, path)
            result = ParseResult(text="", metadata=_base_metadata(""))

        logger.info(
            "Parsed | type=%s path=%s words=%d",
            document_type.value, path, result.metadata.get("word_count", 0),
        )
        return result

    # ------------------------------------------------------------------
    # Blocking readers: run in thread executor
    # ------------------------------------------------------------------

    def _parse_pdf(self, path: str) -> ParseResult:
        from pypdf import PdfReader

        reader = PdfReader(path)
        pages = [page.extract_text() or "" for page in reader.pages]
        text = "\n\n".join(pages)

        info = reader.metadata or {}
        metadata = _base_metadata(text)
        metadata.update(
            title=getattr(info, "title", None),
            author=getattr(info, "author", None),
            page_count=len(reader.pages),
            images=[
                image.name
                for page in reader.pages
                for image in self._page_images(page)
            ],
        )
        return ParseResult(text=text, metadata=metadata)

    @staticmethod
    def _page_images(page) -> list:
        try:
            return list(page.images)
        except Exception as exc:
            logger.debug("PDF image listing skipped | error=%s", exc)
            return []

    def _parse_docx(self, path: str) -> ParseResult:
        import docx

        doc = docx.Document(path)
        paragraphs = [p for p in doc.paragraphs if p.text.strip()]
        text = "\n".join(p.text for p in paragraphs)
        headings = [
            p.text for p in paragraphs
            if p.style is not None and (p.style.name or "").lower().startswith("heading")
        ]
        tables = [
            [[cell.text for cell in row.cells] for row in table.rows]
            for table in doc.tables
        ]

        metadata = _base_metadata(text)
        core = doc.core_properties
        metadata.update(
            title=core.title or None,
            author=core.author or None,
            page_count=1,
            tables=[{"rows": len(t), "columns": len(t[0]) if t else 0} for t in tables],
            images=[rel.target_ref for rel in doc.part.rels.values() if "image" in rel.reltype],
            structure={"headings": headings},
        )
        return ParseResult(
            text=text,
            metadata=metadata,
            structure={"headings": headings},
            tables=tables,
        )

    def _parse_text(self, path: str) -> ParseResult:
        with open(path, "rb") as fh:
            data = fh.read()
        # Plain text / markdown: decode with UTF-8, fallback to latin-1
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            text = data.decode("latin-1", errors="replace")

        headings = [line.lstrip("# ").strip() for line in text.splitlines() if line.startswith("#")]
        metadata = _base_metadata(text)
        metadata.update(page_count=1, structure={"headings": headings})
        return ParseResult(text=text, metadata=metadata, structure={"headings": headings})
