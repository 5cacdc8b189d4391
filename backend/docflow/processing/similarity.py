"""
Similarity / Duplicate Detection
════════════════════════════════

Each document is represented by three independently L2-normalised vectors:

  text       sparse {term: tf × ln(total_tokens / term_count)}
  metadata   [size/10MB, one-hot type ×5, one-hot category ×4, words/10k]
  structure  [has_tables, has_images, has_links, pages/100, headings/50]

A pairwise score is the weighted sum of the per-space similarities under
one metric (default weights text 0.7, metadata 0.2, structure 0.1). Every
metric returns a value in [0, 1] and is symmetric, so score(A, B) ==
score(B, A).

Candidate pruning
─────────────────
find_similar() never scans the whole corpus: candidates share the owner,
or the category, or were created in the last 30 days; newest first, at
most 100, the document itself excluded.

Cache
─────
Pairwise results are stored under the canonical (sorted) id pair plus the
algorithm. compare_documents() reads through entries younger than 24 h;
entries expire 30 days after computation and are removed by
purge_expired_cache(). Duplicate flags are derived from the threshold at
read time, never stored, so changing the threshold never changes a score.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from rapidfuzz.distance import Levenshtein

from docflow.core.config import Settings, settings as default_settings
from docflow.core.exceptions import (
    DocumentNotFoundError,
    InsufficientDataError,
    UnsupportedAlgorithmError,
)
from docflow.models.documents import Document
from docflow.repositories.base import DocumentStore
from docflow.schemas.documents import (
    SimilarityDetails,
    SimilarityOptions,
    SimilarityResult,
    SimilarityStatistics,
    SimilarityThresholds,
    SimilarityWeights,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Vectorisation constants
# ---------------------------------------------------------------------------

STOP_WORDS: frozenset[str] = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "can", "this", "that", "these", "those",
})

METADATA_TYPES:      tuple[str, ...] = ("pdf", "docx", "txt", "xlsx", "image")
METADATA_CATEGORIES: tuple[str, ...] = ("contract", "invoice", "report", "other")

MAX_FILE_SIZE_NORM  = 10 * 1024 * 1024    # 10 MB
MAX_WORD_COUNT_NORM = 10_000
MAX_PAGE_COUNT_NORM = 100
MAX_HEADINGS_NORM   = 50

STATISTICS_WINDOW = 1000

_TOKEN_RE = re.compile(r"\w+")

ALGORITHMS: tuple[str, ...] = ("cosine", "jaccard", "levenshtein", "euclidean", "manhattan")

SparseVector = dict[Any, float]


@dataclass
class DocumentVector:
    document_id: str
    text:        SparseVector
    metadata:    SparseVector | None = None     # None → space excluded
    structure:   SparseVector | None = None


@dataclass
class PairScore:
    overall:              float
    text_similarity:      float
    metadata_similarity:  float | None = None
    structure_similarity: float | None = None

    def details(self) -> dict[str, float | None]:
        return {
            "text_similarity":      self.text_similarity,
            "metadata_similarity":  self.metadata_similarity,
            "structure_similarity": self.structure_similarity,
        }


@dataclass
class SimilarityMatrix:
    document_ids: list[str]
    algorithm:    str
    scores:       list[list[float]] = field(default_factory=list)

    def score(self, id_a: str, id_b: str) -> float:
        return self.scores[self.document_ids.index(id_a)][self.document_ids.index(id_b)]


# ---------------------------------------------------------------------------
# Vectorisation
# ---------------------------------------------------------------------------

def tokenize(text: str) -> list[str]:
    """Lowercase word tokens; stop-words, tokens ≤2 chars and non-alphabetic tokens dropped."""
    return [
        token for token in _TOKEN_RE.findall(text.lower())
        if len(token) > 2 and token not in STOP_WORDS and token.isalpha()
    ]


def l2_normalize(vector: SparseVector) -> SparseVector:
    magnitude = math.sqrt(sum(v * v for v in vector.values()))
    if magnitude == 0:
        return dict(vector)
    return {k: v / magnitude for k, v in vector.items()}


def build_text_vector(text: str) -> SparseVector:
    tokens = tokenize(text)
    total = len(tokens)
    if not total:
        return {}
    counts = Counter(tokens)
    weights = {
        term: (count / total) * math.log(total / count)
        for term, count in counts.items()
    }
    return l2_normalize({t: w for t, w in weights.items() if w > 0})


def _dense(values: list[float]) -> SparseVector:
    return {i: v for i, v in enumerate(values)}


def build_metadata_vector(document: Document) -> SparseVector:
    metadata = document.extracted_metadata or {}
    values = [min((document.file_size or 0) / MAX_FILE_SIZE_NORM, 1.0)]
    values += [1.0 if document.document_type == t else 0.0 for t in METADATA_TYPES]
    values += [1.0 if document.category == c else 0.0 for c in METADATA_CATEGORIES]
    values.append(min((metadata.get("word_count") or 0) / MAX_WORD_COUNT_NORM, 1.0))
    return l2_normalize(_dense(values))


def build_structure_vector(document: Document) -> SparseVector:
    metadata = document.extracted_metadata or {}
    headings = (metadata.get("structure") or {}).get("headings") or []
    values = [
        1.0 if metadata.get("tables") else 0.0,
        1.0 if metadata.get("images") else 0.0,
        1.0 if metadata.get("links") else 0.0,
        min((metadata.get("page_count") or 1) / MAX_PAGE_COUNT_NORM, 1.0),
        min(len(headings) / MAX_HEADINGS_NORM, 1.0),
    ]
    return l2_normalize(_dense(values))


def build_document_vector(
    document: Document,
    include_metadata: bool = True,
    include_structure: bool = True,
) -> DocumentVector:
    return DocumentVector(
        document_id=str(document.id),
        text=build_text_vector(document.extracted_text or ""),
        metadata=build_metadata_vector(document) if include_metadata else None,
        structure=build_structure_vector(document) if include_structure else None,
    )


# ---------------------------------------------------------------------------
# Metrics: each symmetric, each clamped to [0, 1]
# ---------------------------------------------------------------------------

def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _ordered(keys: set) -> list:
    # Fixed summation order keeps score(A, B) bit-identical to score(B, A).
    return sorted(keys, key=str)


def cosine_similarity(a: SparseVector, b: SparseVector) -> float:
    if not a or not b:
        return 0.0
    dot = sum(a[k] * b[k] for k in _ordered(set(a) & set(b)))
    mag_a = math.sqrt(sum(v * v for v in a.values()))
    mag_b = math.sqrt(sum(v * v for v in b.values()))
    if mag_a == 0 or mag_b == 0:
        return 0.0
    return _clamp(dot / (mag_a * mag_b))


def jaccard_similarity(a: SparseVector, b: SparseVector) -> float:
    """Set Jaccard over the keys whose weight is > 0."""
    set_a = {k for k, v in a.items() if v > 0}
    set_b = {k for k, v in b.items() if v > 0}
    union = set_a | set_b
    if not union:
        return 0.0
    return _clamp(len(set_a & set_b) / len(union))


def flatten_vector(vector: SparseVector) -> str:
    return " ".join(f"{key}:{vector[key]:.4f}" for key in sorted(vector, key=str))


def levenshtein_similarity(a: SparseVector, b: SparseVector) -> float:
    """Normalised edit similarity of the flattened vectors; 0 when both are empty."""
    str_a, str_b = flatten_vector(a), flatten_vector(b)
    if not str_a and not str_b:
        return 0.0
    return _clamp(Levenshtein.normalized_similarity(str_a, str_b))


def euclidean_similarity(a: SparseVector, b: SparseVector) -> float:
    if not a or not b:
        return 0.0
    keys = _ordered(set(a) | set(b))
    distance = math.sqrt(sum((a.get(k, 0.0) - b.get(k, 0.0)) ** 2 for k in keys))
    return _clamp(1.0 - distance / math.sqrt(len(keys)))


def manhattan_similarity(a: SparseVector, b: SparseVector) -> float:
    if not a or not b:
        return 0.0
    keys = _ordered(set(a) | set(b))
    distance = sum(abs(a.get(k, 0.0) - b.get(k, 0.0)) for k in keys)
    return _clamp(1.0 - distance / len(keys))


Metric = Callable[[SparseVector, SparseVector], float]

# algorithm → (text metric, metadata/structure metric)
_METRICS: dict[str, tuple[Metric, Metric]] = {
    "cosine":      (cosine_similarity, cosine_similarity),
    "jaccard":     (jaccard_similarity, jaccard_similarity),
    "levenshtein": (levenshtein_similarity, cosine_similarity),
    "euclidean":   (euclidean_similarity, euclidean_similarity),
    "manhattan":   (manhattan_similarity, manhattan_similarity),
}


def score_pair(
    a: DocumentVector,
    b: DocumentVector,
    algorithm: str,
    weights: SimilarityWeights,
) -> PairScore:
    """
    Weighted sum of per-space similarities, clamped to [0, 1]. A space
    excluded from either vector contributes 0; weights are used as given.
    """
    try:
        text_metric, other_metric = _METRICS[algorithm]
    except KeyError:
        raise UnsupportedAlgorithmError(algorithm) from None

    text_sim = text_metric(a.text, b.text)
    overall = text_sim * weights.text

    metadata_sim = None
    if a.metadata is not None and b.metadata is not None:
        metadata_sim = other_metric(a.metadata, b.metadata)
        overall += metadata_sim * weights.metadata

    structure_sim = None
    if a.structure is not None and b.structure is not None:
        structure_sim = other_metric(a.structure, b.structure)
        overall += structure_sim * weights.structure

    return PairScore(
        overall=round(_clamp(overall), 6),
        text_similarity=round(text_sim, 6),
        metadata_similarity=None if metadata_sim is None else round(metadata_sim, 6),
        structure_similarity=None if structure_sim is None else round(structure_sim, 6),
    )


def canonical_pair(id_a: Any, id_b: Any) -> tuple[str, str]:
    a, b = str(id_a), str(id_b)
    return (a, b) if a <= b else (b, a)


def deduplicate_results(results: Iterable[SimilarityResult]) -> list[SimilarityResult]:
    """Keep the highest score per (document_id, algorithm)."""
    best: dict[tuple[str, str], SimilarityResult] = {}
    for result in results:
        key = (str(result.document_id), result.algorithm)
        if key not in best or result.similarity > best[key].similarity:
            best[key] = result
    return list(best.values())


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class SimilarityEngine:

    def __init__(self, store: DocumentStore, config: Settings | None = None) -> None:
        self._store = store
        self._settings = config or default_settings
        self._cache_lookups = 0
        self._cache_hits = 0

    # ------------------------------------------------------------------
    # Defaults from settings
    # ------------------------------------------------------------------

    def default_thresholds(self) -> SimilarityThresholds:
        return SimilarityThresholds(
            duplicate=self._settings.similarity_duplicate_threshold,
            similar=self._settings.similarity_similar_threshold,
            related=self._settings.similarity_related_threshold,
        )

    def default_weights(self) -> SimilarityWeights:
        return SimilarityWeights(**self._settings.similarity_weights)

    def _coerce_options(self, options: SimilarityOptions | dict | None) -> SimilarityOptions:
        if isinstance(options, SimilarityOptions):
            return options
        data = dict(options or {})
        thresholds = self.default_thresholds().model_dump()
        thresholds.update(data.pop("thresholds", None) or {})
        weights = data.pop("weights", None) or self.default_weights().model_dump()
        return SimilarityOptions(thresholds=thresholds, weights=weights, **data)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def find_similar(
        self,
        document_id,
        options: SimilarityOptions | dict | None = None,
    ) -> list[SimilarityResult]:
        opts = self._coerce_options(options)
        document = await self._load(document_id)

        source = build_document_vector(document, opts.include_metadata, opts.include_structure)
        now = datetime.now(timezone.utc)
        candidates = await self._store.find_candidates(
            document,
            recent_since=now - timedelta(days=self._settings.similarity_recent_days),
            limit=self._settings.similarity_max_candidates,
        )

        results: list[SimilarityResult] = []
        for candidate in candidates:
            target = build_document_vector(candidate, opts.include_metadata, opts.include_structure)
            for algorithm in opts.algorithms:
                score = score_pair(source, target, algorithm, opts.weights)
                if opts.cache_results:
                    await self._write_cache(document.id, candidate.id, algorithm, score, now)
                results.append(
                    self._to_result(candidate.id, algorithm, score.overall, score.details(), opts.thresholds.duplicate)
                )

        ranked = sorted(deduplicate_results(results), key=lambda r: r.similarity, reverse=True)
        related = [r for r in ranked if r.similarity >= opts.thresholds.related]
        logger.info(
            "Similarity search | doc=%s candidates=%d comparisons=%d related=%d duplicates=%d",
            document_id, len(candidates), len(results), len(related),
            sum(1 for r in related if r.is_duplicate),
        )
        return related

    async def compare_documents(
        self,
        id_a,
        id_b,
        algorithm: str = "cosine",
        duplicate_threshold: float | None = None,
    ) -> SimilarityResult:
        if algorithm not in _METRICS:
            raise UnsupportedAlgorithmError(algorithm)
        threshold = (
            duplicate_threshold
            if duplicate_threshold is not None
            else self._settings.similarity_duplicate_threshold
        )

        doc_a = await self._load(id_a)
        doc_b = await self._load(id_b)

        now = datetime.now(timezone.utc)
        first, second = canonical_pair(doc_a.id, doc_b.id)
        self._cache_lookups += 1
        cached = await self._store.get_cached_similarity(
            first, second, algorithm,
            computed_since=now - timedelta(hours=self._settings.similarity_cache_fresh_hours),
            now=now,
        )
        if cached is not None:
            self._cache_hits += 1
            logger.debug("Similarity cache hit | pair=%s~%s algorithm=%s", first, second, algorithm)
            return self._to_result(doc_b.id, algorithm, cached.similarity, cached.details, threshold)

        score = score_pair(
            build_document_vector(doc_a),
            build_document_vector(doc_b),
            algorithm,
            self.default_weights(),
        )
        await self._write_cache(doc_a.id, doc_b.id, algorithm, score, now)
        return self._to_result(doc_b.id, algorithm, score.overall, score.details(), threshold)

    async def detect_duplicates(
        self,
        document_id,
        options: SimilarityOptions | dict | None = None,
    ) -> list[SimilarityResult]:
        results = await self.find_similar(document_id, options)
        return [r for r in results if r.is_duplicate]

    async def batch_similarity_check(
        self,
        document_ids: Iterable,
        options: SimilarityOptions | dict | None = None,
    ) -> dict[str, list[SimilarityResult]]:
        opts = self._coerce_options(options)
        results: dict[str, list[SimilarityResult]] = {}
        for document_id in document_ids:
            try:
                results[str(document_id)] = await self.find_similar(document_id, opts)
            except Exception:
                logger.exception("Batch similarity check failed | doc=%s", document_id)
                results[str(document_id)] = []
        return results

    async def similarity_matrix(self, document_ids: Iterable, algorithm: str = "cosine") -> SimilarityMatrix:
        ids = list(dict.fromkeys(str(d) for d in document_ids))
        if len(ids) < 2:
            raise InsufficientDataError("A similarity matrix needs at least two distinct documents")
        if algorithm not in _METRICS:
            raise UnsupportedAlgorithmError(algorithm)

        documents = [await self._load(uuid.UUID(d)) for d in ids]
        matrix = SimilarityMatrix(
            document_ids=ids,
            algorithm=algorithm,
            scores=[[1.0 if i == j else 0.0 for j in range(len(ids))] for i in range(len(ids))],
        )
        for i in range(len(documents)):
            for j in range(i + 1, len(documents)):
                result = await self.compare_documents(documents[i].id, documents[j].id, algorithm)
                matrix.scores[i][j] = matrix.scores[j][i] = result.similarity
        return matrix

    async def purge_expired_cache(self) -> int:
        removed = await self._store.purge_expired_similarity(datetime.now(timezone.utc))
        logger.info("Similarity cache purged | removed=%d", removed)
        return removed

    async def get_similarity_statistics(self) -> SimilarityStatistics:
        entries = await self._store.recent_similarity_entries(STATISTICS_WINDOW)
        duplicate_threshold = self._settings.similarity_duplicate_threshold
        usage: dict[str, int] = {}
        for entry in entries:
            usage[entry.algorithm] = usage.get(entry.algorithm, 0) + 1
        return SimilarityStatistics(
            total_comparisons=len(entries),
            average_similarity=(sum(e.similarity for e in entries) / len(entries)) if entries else 0.0,
            duplicate_count=sum(1 for e in entries if e.similarity >= duplicate_threshold),
            algorithm_usage=usage,
            cache_hit_rate=self.cache_hit_rate,
        )

    @property
    def cache_hit_rate(self) -> float:
        if not self._cache_lookups:
            return 0.0
        return self._cache_hits / self._cache_lookups

    @staticmethod
    def generate_document_hash(document: Document) -> str:
        content = "|".join([
            document.extracted_text or "",
            str(document.document_type),
            str(document.category),
            str(document.file_size),
        ])
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_content_hash(content: str) -> str:
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _load(self, document_id) -> Document:
        document = await self._store.find_by_id(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    async def _write_cache(self, id_a, id_b, algorithm: str, score: PairScore, now: datetime) -> None:
        first, second = canonical_pair(id_a, id_b)
        await self._store.put_cached_similarity(
            first, second, algorithm,
            similarity=score.overall,
            details=score.details(),
            computed_at=now,
            expires_at=now + timedelta(days=self._settings.similarity_cache_expiry_days),
        )

    @staticmethod
    def _to_result(
        document_id,
        algorithm: str,
        similarity: float,
        details: dict,
        duplicate_threshold: float,
    ) -> SimilarityResult:
        return SimilarityResult(
            document_id=document_id,
            similarity=similarity,
            algorithm=algorithm,
            details=SimilarityDetails(**(details or {})),
            is_duplicate=similarity >= duplicate_threshold,
            duplicate_threshold=duplicate_threshold,
        )
