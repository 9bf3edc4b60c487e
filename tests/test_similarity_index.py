"""
Tests for the rapidfuzz-backed similarity index.
"""
import pytest

from api.services.similarity_index import SimilarityIndex, build_index, name_ratio

pytestmark = pytest.mark.unit


class TestSimilarityIndex:
    """Tests for SimilarityIndex search behavior."""

    def test_exact_match_has_zero_distance(self):
        index = build_index(["acme", "globex"], key=lambda s: s, threshold=0.3)
        best = index.best("acme")
        assert best.item == "acme"
        assert best.distance == 0.0
        assert best.similarity == 1.0

    def test_results_ordered_best_first(self):
        index = build_index(["acme widgets", "acme"], key=lambda s: s, threshold=0.5)
        results = index.search("acme")
        assert results[0].item == "acme"
        assert all(a.score >= b.score for a, b in zip(results, results[1:]))

    def test_threshold_filters_unrelated(self):
        """Nothing within a tight threshold of an unrelated string."""
        index = build_index(["acme"], key=lambda s: s, threshold=0.1)
        assert index.search("zyxwvut") == []

    def test_empty_keys_not_indexed(self):
        index = SimilarityIndex(threshold=0.3).index(["", "acme"], key=lambda s: s)
        assert len(index) == 1

    def test_empty_query_or_index(self):
        assert SimilarityIndex().search("acme") == []
        index = build_index(["acme"], key=lambda s: s, threshold=0.3)
        assert index.search("") == []

    def test_limit(self):
        index = build_index(["acme", "acme co", "acme labs"], key=lambda s: s, threshold=0.6)
        assert len(index.search("acme", limit=2)) == 2

    def test_key_function_maps_items(self):
        items = [{"id": 1, "name": "initech"}, {"id": 2, "name": "globex"}]
        index = build_index(items, key=lambda i: i["name"], threshold=0.3)
        assert index.best("initech").item["id"] == 1

    def test_short_name_inside_longer_word_rejected(self):
        """A short name buried inside a longer word is not a fuzzy hit."""
        index = build_index(["meta"], key=lambda s: s, threshold=0.3)
        assert index.search("metadata review") == []

    def test_short_name_as_whole_word_still_matches(self):
        index = build_index(["acme"], key=lambda s: s, threshold=0.3)
        assert index.best("acme quarterly review").item == "acme"


class TestNameRatio:
    def test_similar_lengths_use_wratio(self):
        assert name_ratio("acme corp", "acme corp") == 100

    def test_score_cutoff(self):
        assert name_ratio("meta", "metadata review", score_cutoff=70) == 0.0
