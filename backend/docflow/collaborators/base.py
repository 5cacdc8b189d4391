"""
External Collaborators — Abstract Base

The pipeline orchestrator delegates everything except text recognition and
similarity to these interfaces. Concrete implementations (rule tables, ML
models, third-party translation APIs) are selected by dotted import path in
settings and built by collaborators.factory.

Contract (enforced by ALL implementations):
  - Methods are async; blocking work goes to a thread executor.
  - Failures are raised, never returned as sentinel values. The orchestrator
    converts any exception into a failed stage result.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from docflow.models.documents import DocumentType


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class ParseResult:
    """
    text       : full plain text of the document
    metadata   : title, author, page_count, word_count, tables, images, links,
                 structure.headings (consumed by similarity vectorisation)
    structure  : headings / sections as found by the parser
    tables     : raw table rows, one list of cells per row
    """
    text:      str
    metadata:  dict[str, Any] = field(default_factory=dict)
    structure: dict[str, Any] = field(default_factory=dict)
    tables:    list[list[list[str]]] = field(default_factory=list)


@dataclass
class ClassificationResult:
    category:   str
    confidence: float
    tags:       list[str] = field(default_factory=list)


@dataclass
class ExtractionResult:
    entities:  list[dict[str, Any]] = field(default_factory=list)
    keywords:  list[str] = field(default_factory=list)
    sentiment: dict[str, Any] = field(default_factory=dict)
    topics:    list[str] = field(default_factory=list)
    summary:   str = ""


@dataclass
class TranslationResult:
    source_language: str
    target_language: str
    translated_text: str
    provider:        str = "unknown"


@dataclass
class ComplianceReport:
    overall_status: str               # compliant | warning | non_compliant
    score:          float
    checks:         list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Abstract interfaces
# ---------------------------------------------------------------------------

class DocumentParser(ABC):

    @abstractmethod
    async def parse(
        self,
        path: str,
        document_type: DocumentType,
        options: dict[str, Any] | None = None,
    ) -> ParseResult:
        """Read text, metadata and structure from the stored file."""

    @abstractmethod
    def detect_type(self, filename: str) -> DocumentType:
        """Map a filename to a DocumentType (UNKNOWN when unrecognised)."""


class DocumentClassifier(ABC):

    @abstractmethod
    async def classify(
        self,
        document_id: UUID,
        text: str,
        options: dict[str, Any] | None = None,
    ) -> ClassificationResult: ...


class ContentExtractor(ABC):

    @abstractmethod
    async def extract_content(
        self,
        document_id: UUID,
        text: str,
        options: dict[str, Any] | None = None,
    ) -> ExtractionResult: ...


class Translator(ABC):

    @abstractmethod
    async def translate_to_many(
        self,
        document_id: UUID,
        target_languages: list[str],
        options: dict[str, Any] | None = None,
    ) -> list[TranslationResult]: ...


class ComplianceChecker(ABC):

    @abstractmethod
    async def check(
        self,
        document_id: UUID,
        options: dict[str, Any] | None = None,
    ) -> ComplianceReport: ...


@dataclass
class Collaborators:
    """The configured set handed to the orchestrator; None = stage skipped."""
    parser:     DocumentParser | None = None
    classifier: DocumentClassifier | None = None
    extractor:  ContentExtractor | None = None
    translator: Translator | None = None
    compliance: ComplianceChecker | None = None
