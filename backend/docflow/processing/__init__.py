"""
Document Processing Package
════════════════════════════

The two compute-heavy engines the pipeline orchestrator calls into.

Modules
───────
  ocr.py         Bounded FIFO pool of Tesseract engines and the text
                 recognition service (images, multi-page TIFF, scanned PDF)
  similarity.py  Vector construction, similarity metrics, duplicate
                 detection and the persistent pairwise score cache

Design principles
─────────────────
  • Blocking work (Tesseract, Pillow, pdf2image) runs in the thread executor.
  • Engines are stateless between calls; all state lives in the store.
  • Every step emits pipe-delimited log lines.
"""

from docflow.processing.ocr import (
    RecognitionOptions,
    RecognitionResult,
    RecognitionWorkerPool,
    TesseractEngine,
    TextRecognitionService,
)
from docflow.processing.similarity import (
    DocumentVector,
    SimilarityEngine,
    SimilarityMatrix,
    build_document_vector,
    score_pair,
)

__all__ = [
    "RecognitionOptions",
    "RecognitionResult",
    "RecognitionWorkerPool",
    "TesseractEngine",
    "TextRecognitionService",
    "DocumentVector",
    "SimilarityEngine",
    "SimilarityMatrix",
    "build_document_vector",
    "score_pair",
]
