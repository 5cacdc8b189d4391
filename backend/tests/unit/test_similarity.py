"""
Unit Tests — Similarity Engine
═══════════════════════════════
Vectorisation and metrics are tested as pure functions; the engine runs
against InMemoryDocumentStore.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from docflow.core.exceptions import (
    DocumentNotFoundError,
    InsufficientDataError,
    UnsupportedAlgorithmError,
)
from docflow.models.documents import DocumentCategory, DocumentType
from docflow.processing.similarity import (
    ALGORITHMS,
    PairScore,
    SimilarityEngine,
    build_document_vector,
    build_text_vector,
    canonical_pair,
    cosine_similarity,
    jaccard_similarity,
    levenshtein_similarity,
    score_pair,
    tokenize,
)
from docflow.schemas.documents import SimilarityWeights
from tests.fakes import make_document

CONTRACT_A = "Service agreement between Acme and Globex covering payment terms and delivery schedule"
CONTRACT_B = "Supply agreement between Acme and Initech covering payment penalties and delivery windows"
RECIPE     = "Whisk eggs with sugar, fold flour gently, bake until golden"

WEIGHTS = SimilarityWeights()


def _vector(text: str, **kwargs):
    return build_document_vector(make_document(text=text, **kwargs))


# ─────────────────────────────────────────────────────────────────────────────
# Vectorisation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.similarity
class TestVectorisation:

    def test_tokenize_drops_stop_words_short_and_numeric_tokens(self):
        assert tokenize("The invoice is due in 30 days, ok?") == ["invoice", "due", "days"]

    def test_tokenize_keeps_accented_words_whole(self):
        assert tokenize("Résumé du contrat signé") == ["résumé", "contrat", "signé"]

    def test_tokenize_keeps_cyrillic_words(self):
        assert tokenize("Договор поставки товаров") == ["договор", "поставки", "товаров"]

    def test_tokenize_drops_mixed_alphanumeric_and_underscored_tokens(self):
        assert tokenize("invoice_id abc123 total") == ["total"]

    def test_cyrillic_text_gets_a_text_vector(self):
        assert build_text_vector("Договор поставки товаров между компаниями") != {}

    def test_text_vector_is_unit_length(self):
        vector = build_text_vector(CONTRACT_A)

        assert sum(v * v for v in vector.values()) == pytest.approx(1.0)

    def test_empty_text_gives_empty_vector(self):
        assert build_text_vector("") == {}

    def test_metadata_and_structure_can_be_excluded(self):
        vector = build_document_vector(make_document(text=CONTRACT_A), include_metadata=False, include_structure=False)

        assert vector.metadata is None
        assert vector.structure is None

    def test_canonical_pair_is_order_independent(self):
        a, b = uuid.uuid4(), uuid.uuid4()

        assert canonical_pair(a, b) == canonical_pair(b, a)
        first, second = canonical_pair(a, b)
        assert first <= second


# ─────────────────────────────────────────────────────────────────────────────
# Metrics
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.similarity
class TestMetrics:

    @pytest.mark.parametrize("algorithm", ALGORITHMS)
    def test_score_is_symmetric(self, algorithm):
        a, b = _vector(CONTRACT_A), _vector(CONTRACT_B, document_type=DocumentType.PDF)

        assert score_pair(a, b, algorithm, WEIGHTS).overall == score_pair(b, a, algorithm, WEIGHTS).overall

    @pytest.mark.parametrize("algorithm", ALGORITHMS)
    def test_score_within_unit_interval(self, algorithm):
        score = score_pair(_vector(CONTRACT_A), _vector(RECIPE), algorithm, WEIGHTS)

        assert 0.0 <= score.overall <= 1.0

    def test_self_cosine_is_one(self):
        vector = build_text_vector(CONTRACT_A)

        assert cosine_similarity(vector, vector) == pytest.approx(1.0)
        assert score_pair(_vector(CONTRACT_A), _vector(CONTRACT_A), "cosine", WEIGHTS).overall == pytest.approx(1.0)

    def test_related_texts_score_higher_than_unrelated(self):
        related = score_pair(_vector(CONTRACT_A), _vector(CONTRACT_B), "cosine", WEIGHTS).overall
        unrelated = score_pair(_vector(CONTRACT_A), _vector(RECIPE), "cosine", WEIGHTS).overall

        assert related > unrelated

    def test_jaccard_uses_shared_terms(self):
        assert jaccard_similarity({"a": 0.5, "b": 0.5}, {"b": 0.9, "c": 0.1}) == pytest.approx(1 / 3)

    def test_levenshtein_of_two_empty_vectors_is_zero(self):
        assert levenshtein_similarity({}, {}) == 0.0

    def test_excluded_space_contributes_nothing(self):
        a = build_document_vector(make_document(text=CONTRACT_A), include_metadata=False, include_structure=False)
        b = build_document_vector(make_document(text=CONTRACT_A), include_metadata=False, include_structure=False)

        score = score_pair(a, b, "cosine", WEIGHTS)

        assert score.overall == pytest.approx(0.7)
        assert score.text_similarity == pytest.approx(1.0)
        assert score.metadata_similarity is None

    def test_weights_are_applied_as_given(self):
        weights = SimilarityWeights(text=0.5, metadata=0, structure=0)

        score = score_pair(_vector(CONTRACT_A), _vector(CONTRACT_A), "cosine", weights)

        assert score.overall == pytest.approx(0.5)

    def test_overweighted_sum_is_clamped(self):
        weights = SimilarityWeights(text=1.0, metadata=1.0, structure=1.0)

        score = score_pair(_vector(CONTRACT_A), _vector(CONTRACT_A), "cosine", weights)

        assert score.overall == 1.0

    def test_unknown_algorithm_raises(self):
        with pytest.raises(UnsupportedAlgorithmError):
            score_pair(_vector(CONTRACT_A), _vector(CONTRACT_B), "hamming", WEIGHTS)


# ─────────────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.similarity
class TestFindSimilar:

    async def test_twin_is_reported_as_duplicate(self, similarity_engine, make_doc):
        source = await make_doc(text=CONTRACT_A)
        twin = await make_doc(text=CONTRACT_A)
        await make_doc(text=RECIPE, category=DocumentCategory.REPORT)

        results = await similarity_engine.find_similar(source.id)

        duplicates = [r for r in results if r.is_duplicate]
        assert duplicates
        assert {r.document_id for r in duplicates} == {twin.id}
        assert all(r.document_id != source.id for r in results)

    async def test_results_sorted_by_similarity(self, similarity_engine, make_doc):
        source = await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_B)

        results = await similarity_engine.find_similar(source.id, {"thresholds": {"related": 0.0}})

        scores = [r.similarity for r in results]
        assert scores == sorted(scores, reverse=True)

    async def test_scores_below_related_threshold_are_dropped(self, similarity_engine, make_doc):
        source = await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_B)
        await make_doc(text=RECIPE)

        with patch(
            "docflow.processing.similarity.score_pair",
            return_value=PairScore(overall=0.4, text_similarity=0.4),
        ):
            results = await similarity_engine.find_similar(source.id, {"thresholds": {"related": 0.6}})

        assert results == []

    async def test_duplicate_threshold_does_not_change_scores(self, similarity_engine, make_doc):
        source = await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_B)

        strict = await similarity_engine.find_similar(
            source.id, {"algorithms": ["cosine"], "thresholds": {"duplicate": 0.99, "related": 0.0}},
        )
        lax = await similarity_engine.find_similar(
            source.id, {"algorithms": ["cosine"], "thresholds": {"duplicate": 0.01, "related": 0.0}},
        )

        assert [r.similarity for r in strict] == [r.similarity for r in lax]
        assert all(r.is_duplicate for r in lax)
        assert not any(r.is_duplicate for r in strict)

    async def test_one_result_per_candidate_and_algorithm(self, similarity_engine, make_doc):
        source = await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_A)

        results = await similarity_engine.find_similar(source.id)

        assert sorted(r.algorithm for r in results) == ["cosine", "jaccard", "levenshtein"]

    async def test_results_written_to_cache(self, similarity_engine, make_doc, store):
        source = await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_A)

        await similarity_engine.find_similar(source.id, {"algorithms": ["cosine"]})

        assert store.cache_writes == 1

    async def test_cache_write_can_be_disabled(self, similarity_engine, make_doc, store):
        source = await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_A)

        await similarity_engine.find_similar(source.id, {"cache_results": False})

        assert store.cache_writes == 0

    async def test_unknown_document_raises(self, similarity_engine):
        with pytest.raises(DocumentNotFoundError):
            await similarity_engine.find_similar(uuid.uuid4())

    async def test_detect_duplicates_filters_results(self, similarity_engine, make_doc):
        source = await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_B)

        duplicates = await similarity_engine.detect_duplicates(source.id)

        assert duplicates
        assert all(r.is_duplicate for r in duplicates)


@pytest.mark.unit
@pytest.mark.similarity
class TestCompareDocuments:

    async def test_second_comparison_within_window_is_cached(self, similarity_engine, make_doc):
        a = await make_doc(text=CONTRACT_A)
        b = await make_doc(text=CONTRACT_B)

        with patch("docflow.processing.similarity.score_pair", wraps=score_pair) as spy:
            first = await similarity_engine.compare_documents(a.id, b.id)
            second = await similarity_engine.compare_documents(b.id, a.id)

        assert spy.call_count == 1
        assert first.similarity == second.similarity
        assert similarity_engine.cache_hit_rate == pytest.approx(0.5)

    async def test_stale_cache_entry_is_recomputed(self, similarity_engine, make_doc, store):
        a = await make_doc(text=CONTRACT_A)
        b = await make_doc(text=CONTRACT_B)
        await similarity_engine.compare_documents(a.id, b.id)
        for entry in store.cache.values():
            entry.computed_at = datetime.now(timezone.utc) - timedelta(hours=25)

        with patch("docflow.processing.similarity.score_pair", wraps=score_pair) as spy:
            await similarity_engine.compare_documents(a.id, b.id)

        assert spy.call_count == 1

    async def test_threshold_only_changes_duplicate_flag(self, similarity_engine, make_doc):
        a = await make_doc(text=CONTRACT_A)
        b = await make_doc(text=CONTRACT_B)

        low = await similarity_engine.compare_documents(a.id, b.id, duplicate_threshold=0.0)
        high = await similarity_engine.compare_documents(a.id, b.id, duplicate_threshold=1.0)

        assert low.similarity == high.similarity
        assert low.is_duplicate is True
        assert high.is_duplicate is (high.similarity >= 1.0)

    async def test_unsupported_algorithm_raises(self, similarity_engine, make_doc):
        a = await make_doc(text=CONTRACT_A)
        b = await make_doc(text=CONTRACT_B)

        with pytest.raises(UnsupportedAlgorithmError):
            await similarity_engine.compare_documents(a.id, b.id, algorithm="hamming")

    async def test_missing_document_raises(self, similarity_engine, make_doc):
        a = await make_doc(text=CONTRACT_A)

        with pytest.raises(DocumentNotFoundError):
            await similarity_engine.compare_documents(a.id, uuid.uuid4())


@pytest.mark.unit
@pytest.mark.similarity
class TestBatchAndMaintenance:

    async def test_matrix_is_symmetric_with_unit_diagonal(self, similarity_engine, make_doc):
        docs = [await make_doc(text=t) for t in (CONTRACT_A, CONTRACT_B, RECIPE)]
        ids = [str(d.id) for d in docs]

        matrix = await similarity_engine.similarity_matrix(ids)

        for i in range(3):
            assert matrix.scores[i][i] == 1.0
            for j in range(3):
                assert matrix.scores[i][j] == matrix.scores[j][i]
        assert matrix.score(ids[0], ids[1]) == matrix.scores[0][1]

    async def test_matrix_needs_two_documents(self, similarity_engine, make_doc):
        doc = await make_doc(text=CONTRACT_A)

        with pytest.raises(InsufficientDataError):
            await similarity_engine.similarity_matrix([doc.id, doc.id])

    async def test_batch_check_maps_errors_to_empty_list(self, similarity_engine, make_doc):
        doc = await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_A)
        missing = uuid.uuid4()

        results = await similarity_engine.batch_similarity_check([doc.id, missing])

        assert results[str(missing)] == []
        assert results[str(doc.id)]

    async def test_purge_removes_expired_entries(self, similarity_engine, make_doc, store):
        a = await make_doc(text=CONTRACT_A)
        b = await make_doc(text=CONTRACT_B)
        await similarity_engine.compare_documents(a.id, b.id)
        for entry in store.cache.values():
            entry.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        removed = await similarity_engine.purge_expired_cache()

        assert removed == 1
        assert store.cache == {}

    async def test_statistics_summarise_cache(self, similarity_engine, make_doc):
        source = await make_doc(text=CONTRACT_A)
        await make_doc(text=CONTRACT_A)
        await make_doc(text=RECIPE)

        await similarity_engine.find_similar(source.id, {"algorithms": ["cosine", "jaccard"]})
        stats = await similarity_engine.get_similarity_statistics()

        assert stats.total_comparisons == 4
        assert stats.algorithm_usage == {"cosine": 2, "jaccard": 2}
        assert stats.duplicate_count >= 2
        assert 0.0 <= stats.average_similarity <= 1.0

    def test_content_hash_is_sha256(self):
        digest = SimilarityEngine.generate_content_hash("hello")

        assert digest == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"

    def test_document_hash_changes_with_text(self):
        a = make_document(text=CONTRACT_A)
        b = make_document(text=CONTRACT_B)

        assert SimilarityEngine.generate_document_hash(a) != SimilarityEngine.generate_document_hash(b)
