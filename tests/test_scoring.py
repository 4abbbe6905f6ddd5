from datetime import timedelta

import pytest

from tiermem.services.scoring import cosine_similarity, fscore, heat_score, jaccard_similarity, recency_factor
from tiermem.utils.timestamp_utils import utc_now


class TestCosineSimilarity:

    def test_identical_vector_is_one(self):
        v = [0.3, -1.2, 4.5, 0.01]
        assert cosine_similarity(v, v) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]) == 0.0

    def test_mismatched_lengths(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0

    def test_empty_vectors(self):
        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([], [1.0]) == 0.0


class TestJaccardSimilarity:

    def test_identical_sets(self):
        assert jaccard_similarity(['a', 'b'], ['b', 'a']) == 1.0

    def test_disjoint_sets(self):
        assert jaccard_similarity(['a'], ['b']) == 0.0

    def test_both_empty(self):
        assert jaccard_similarity([], []) == 0.0

    def test_symmetric(self):
        a, b = ['x', 'y', 'z'], ['y', 'z', 'w', 'v']
        assert jaccard_similarity(a, b) == jaccard_similarity(b, a) == pytest.approx(2 / 5)

    def test_duplicates_collapsed(self):
        assert jaccard_similarity(['a', 'a', 'b'], ['a', 'b', 'b']) == 1.0


class TestFscore:

    def test_sum_of_components(self):
        assert fscore([1.0, 0.0], [1.0, 0.0], ['a', 'b'], ['a', 'c']) == pytest.approx(1.0 + 1 / 3)

    def test_keyword_only_when_embeddings_missing(self):
        assert fscore([], [0.5, 0.5], ['a'], ['a']) == 1.0


class TestRecencyFactor:

    def test_now_is_one(self):
        now = utc_now()
        assert recency_factor(now, now=now) == 1.0

    def test_future_access_is_clamped(self):
        now = utc_now()
        assert recency_factor(now + timedelta(hours=1), now=now) == 1.0

    def test_strictly_decreasing(self):
        now = utc_now()
        values = [recency_factor(now - timedelta(days=d), now=now) for d in (1, 10, 100)]
        assert values[0] > values[1] > values[2]

    def test_approaches_zero(self):
        now = utc_now()
        assert recency_factor(now - timedelta(days=10000), now=now) < 1e-30

    def test_custom_time_constant(self):
        now = utc_now()
        assert recency_factor(now - timedelta(seconds=100), time_constant=100.0, now=now) == pytest.approx(0.36787944)


class TestHeatScore:

    def test_formula(self):
        assert heat_score(3, 4, 0.5, alpha=1.0, beta=0.5, gamma=2.0) == pytest.approx(3 + 2 + 1)

    def test_default_coefficients(self):
        assert heat_score(2, 3, 1.0) == 6.0

    def test_monotonic_in_visits_and_length(self):
        base = heat_score(1, 1, 0.5)
        assert heat_score(2, 1, 0.5) >= base
        assert heat_score(1, 2, 0.5) >= base
