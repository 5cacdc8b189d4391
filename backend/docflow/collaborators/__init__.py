from docflow.collaborators.base import (
    ClassificationResult,
    Collaborators,
    ComplianceChecker,
    ComplianceReport,
    ContentExtractor,
    DocumentClassifier,
    DocumentParser,
    ExtractionResult,
    ParseResult,
    TranslationResult,
    Translator,
)
from docflow.collaborators.factory import build_collaborators

__all__ = [
    "ClassificationResult",
    "Collaborators",
    "ComplianceChecker",
    "ComplianceReport",
    "ContentExtractor",
    "DocumentClassifier",
    "DocumentParser",
    "ExtractionResult",
    "ParseResult",
    "TranslationResult",
    "Translator",
    "build_collaborators",
]
