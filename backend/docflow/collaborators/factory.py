"""
Collaborator Factory

Builds the orchestrator's collaborator set from settings. Each setting is a
dotted import path ("package.module.ClassName"); an empty value leaves the
collaborator unconfigured and the pipeline skips its stage.

Usage in a worker:
    collaborators = build_collaborators()
    orchestrator  = PipelineOrchestrator(store, collaborators, ...)
"""

from __future__ import annotations

import importlib
import logging
from typing import Any

from docflow.collaborators.base import (
    Collaborators,
    ComplianceChecker,
    ContentExtractor,
    DocumentClassifier,
    DocumentParser,
    Translator,
)
from docflow.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def load_class(dotted_path: str) -> type:
    module_path, _, class_name = dotted_path.rpartition(".")
    if not module_path:
        raise ValueError(f"Not a dotted import path: '{dotted_path}'")
    module = importlib.import_module(module_path)
    try:
        return getattr(module, class_name)
    except AttributeError:
        raise ValueError(f"Module '{module_path}' has no attribute '{class_name}'") from None


def _build(dotted_path: str, expected: type, role: str) -> Any:
    if not dotted_path:
        logger.info("Collaborator not configured | role=%s", role)
        return None
    cls = load_class(dotted_path)
    if not issubclass(cls, expected):
        raise TypeError(f"{dotted_path} is not a {expected.__name__}")
    logger.info("Collaborator loaded | role=%s class=%s", role, dotted_path)
    return cls()


def build_collaborators(config: Settings | None = None) -> Collaborators:
    """
    Return the configured collaborators.
    Raises ValueError / TypeError / ImportError for a misconfigured path,
    so a broken deployment fails at worker start rather than per document.
    """
    cfg = config or default_settings
    return Collaborators(
        parser=_build(cfg.parser_class, DocumentParser, "parser"),
        classifier=_build(cfg.classifier_class, DocumentClassifier, "classifier"),
        extractor=_build(cfg.extractor_class, ContentExtractor, "extractor"),
        translator=_build(cfg.translator_class, Translator, "translator"),
        compliance=_build(cfg.compliance_class, ComplianceChecker, "compliance"),
    )
