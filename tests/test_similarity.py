# tests/test_similarity.py
"""
Tests for plain and importance-weighted cosine ranking.
"""

import math

import numpy as np
import pytest

from pattern_nexus import cosine_similarity, importance_weighted_similarity
from pattern_nexus.core.similarity import best_match, rank_candidates


class TestCosine:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert importance_weighted_similarity([0.0, 0.0], [1.0, 0.0], [1.0, 1.0]) == 0.0


class TestWeighted:
    def test_zero_importance_matches_cosine(self):
        a = np.array([0.3, -0.2, 0.9])
        b = np.array([0.1, 0.4, 0.5])
        assert importance_weighted_similarity(a, b, np.zeros(3)) == pytest.approx(
            cosine_similarity(a, b)
        )

    def test_agreement_on_important_dimension_counts_more(self):
        a = [1.0, 1.0]
        b = [1.0, 0.0]
        plain = cosine_similarity(a, b)
        weighted = importance_weighted_similarity(a, b, [10.0, 0.0])

        assert plain == pytest.approx(1 / math.sqrt(2))
        assert weighted == pytest.approx(11 / math.sqrt(12 * 11))
        assert weighted > plain


class TestRanking:
    def test_identical_vector_ranks_first(self, make_stored):
        candidates = [
            make_stored("far", [0.0, 1.0, 0.0, 0.0]),
            make_stored("exact", [1.0, 0.0, 0.0, 0.0]),
            make_stored("near", [0.9, 0.1, 0.0, 0.0]),
        ]
        results = rank_candidates(np.array([1.0, 0.0, 0.0, 0.0]), candidates, np.zeros(4))

        assert [r.pattern.id for r in results] == ["exact", "near", "far"]
        assert [r.rank for r in results] == [1, 2, 3]
        assert results[0].similarity == pytest.approx(1.0)

    def test_limit(self, make_stored):
        candidates = [make_stored(f"p{i}", [1.0, float(i), 0.0, 0.0]) for i in range(5)]
        results = rank_candidates(np.array([1.0, 0.0, 0.0, 0.0]), candidates, np.zeros(4), limit=2)
        assert len(results) == 2
        assert results[0].pattern.id == "p0"

    def test_weighted_order_uses_importance(self, make_stored):
        candidates = [
            make_stored("dim1", [0.0, 1.0, 0.0, 0.0]),
            make_stored("dim0", [1.0, 0.0, 0.0, 0.0]),
        ]
        query = np.array([0.5, 0.5, 0.0, 0.0])
        results = rank_candidates(query, candidates, np.array([5.0, 0.0, 0.0, 0.0]))

        assert results[0].pattern.id == "dim0"
        assert results[0].similarity == pytest.approx(results[1].similarity)
        assert results[0].weighted_similarity > results[1].weighted_similarity

    def test_matches_scalar_functions(self, make_stored):
        importance = np.array([0.5, 2.0, 0.0, 1.0])
        query = np.array([0.2, -0.4, 0.8, 0.1])
        candidate = make_stored("p", [0.3, 0.1, 0.7, -0.2])

        (result,) = rank_candidates(query, [candidate], importance)
        assert result.similarity == pytest.approx(
            cosine_similarity(query, candidate.context_embedding), abs=1e-6
        )
        assert result.weighted_similarity == pytest.approx(
            importance_weighted_similarity(query, candidate.context_embedding, importance),
            abs=1e-6,
        )

    def test_no_candidates(self):
        assert rank_candidates(np.ones(4), [], np.zeros(4)) == []

    def test_zero_query_scores_zero(self, make_stored):
        (result,) = rank_candidates(np.zeros(4), [make_stored("p", [1.0, 0.0, 0.0, 0.0])], np.zeros(4))
        assert result.similarity == 0.0
        assert result.weighted_similarity == 0.0


class TestBestMatch:
    def test_picks_highest_cosine(self, make_stored):
        candidates = [
            make_stored("a", [0.0, 1.0, 0.0, 0.0]),
            make_stored("b", [1.0, 0.05, 0.0, 0.0]),
        ]
        match = best_match(np.array([1.0, 0.0, 0.0, 0.0]), candidates)
        assert match.pattern.id == "b"
        assert match.similarity > 0.99

    def test_none_without_candidates(self):
        assert best_match(np.ones(4), []) is None
