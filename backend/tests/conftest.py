"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : test_settings, store, fake_engine, recognition_pool,
                    recognition_service, similarity_engine, collaborators,
                    orchestrator, make_doc

Environment strategy:
  - Settings are read from env vars set below, before any docflow import,
    so module-level `settings` and the session engine see test values.
  - The default database is in-memory SQLite (aiosqlite); unit tests use
    InMemoryDocumentStore and never open a connection.
  - Celery runs against the in-memory broker; tasks are never sent.
  - Recognition uses FakeEngine; Tesseract is not required.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no I/O)
  pytest -m integration           # SQL store tests on aiosqlite
  pytest backend/tests/unit/test_pipeline.py
"""

from __future__ import annotations

import os

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any docflow imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("UPLOAD_DIR",            "/tmp/docflow-test/uploads")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")

from docflow.collaborators.base import Collaborators  # noqa: E402
from docflow.core.config import Settings  # noqa: E402
from docflow.processing.ocr import RecognitionWorkerPool, TextRecognitionService  # noqa: E402
from docflow.processing.similarity import SimilarityEngine  # noqa: E402
from docflow.services.pipeline import PipelineOrchestrator  # noqa: E402

from tests.fakes import (  # noqa: E402
    FakeClassifier,
    FakeCompliance,
    FakeEngine,
    FakeExtractor,
    FakeParser,
    FakeTranslator,
    InMemoryDocumentStore,
    make_document,
)


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        upload_dir=str(tmp_path / "uploads"),
        max_upload_bytes=1024 * 1024,
        ocr_pool_size=2,
        ocr_languages=["eng", "spa"],
        job_max_retries=3,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Store + document factory
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def make_doc(store):
    """
    Factory fixture: builds a Document and registers it in the store.

    Usage:
        doc = await make_doc(text="invoice total due")
        doc = await make_doc(document_type=DocumentType.IMAGE, file_path="/x/scan.png")
    """
    async def _build(**kwargs):
        return await store.create_document(make_document(**kwargs))

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Recognition
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine(confidence=0.92)


@pytest_asyncio.fixture
async def recognition_pool(fake_engine):
    """Single-engine pool serving `fake_engine`; shut down after the test."""
    pool = RecognitionWorkerPool(engine_factory=lambda languages: fake_engine, size=1, languages=["eng", "spa"])
    await pool.start()
    yield pool
    await pool.shutdown()


@pytest.fixture
def recognition_service(recognition_pool) -> TextRecognitionService:
    return TextRecognitionService(recognition_pool)


# ─────────────────────────────────────────────────────────────────────────────
# Similarity + orchestrator
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def similarity_engine(store, test_settings) -> SimilarityEngine:
    return SimilarityEngine(store, test_settings)


@pytest.fixture
def collaborators() -> Collaborators:
    return Collaborators(
        parser=FakeParser(),
        classifier=FakeClassifier(),
        extractor=FakeExtractor(),
        translator=FakeTranslator(),
        compliance=FakeCompliance(),
    )


@pytest.fixture
def orchestrator(store, collaborators, recognition_service, similarity_engine, test_settings):
    return PipelineOrchestrator(
        store,
        collaborators,
        recognition=recognition_service,
        similarity=similarity_engine,
        config=test_settings,
    )
