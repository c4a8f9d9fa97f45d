from __future__ import annotations

import unittest
from typing import Dict, List

from truthmesh.engine.classifier import CATEGORY_DESCRIPTIONS, OTHER_CATEGORY, EmbeddingClassifier, cosine_similarity

CATEGORIES = (("Alpha", "alpha description"), ("Beta", "beta description"))


class FakeEmbedder:
    def __init__(self, vectors: Dict[str, List[float]]):
        self.vectors = vectors
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return self.vectors[text]


def make_embedder(**texts: List[float]) -> FakeEmbedder:
    vectors = {"alpha description": [1.0, 0.0], "beta description": [0.0, 1.0]}
    vectors.update({k.replace("_", " "): v for k, v in texts.items()})
    return FakeEmbedder(vectors)


class EmbeddingClassifierTests(unittest.TestCase):
    def test_picks_closest_center(self) -> None:
        classifier = EmbeddingClassifier(make_embedder(beta_news=[0.1, 0.9]), CATEGORIES)
        result = classifier.classify("beta news")
        self.assertEqual(result.category, "Beta")
        self.assertGreater(result.relevance, 0.9)

    def test_tie_goes_to_first_category(self) -> None:
        classifier = EmbeddingClassifier(make_embedder(both=[1.0, 1.0]), CATEGORIES)
        result = classifier.classify("both")
        self.assertEqual(result.category, "Alpha")
        self.assertAlmostEqual(result.relevance, 0.7071, places=4)

    def test_below_threshold_falls_back_to_other_keeping_score(self) -> None:
        classifier = EmbeddingClassifier(make_embedder(noise=[-1.0, -1.0]), CATEGORIES, min_relevance=0.2)
        result = classifier.classify("noise")
        self.assertEqual(result.category, OTHER_CATEGORY)
        self.assertAlmostEqual(result.relevance, -0.7071, places=4)

    def test_relevance_is_within_unit_range(self) -> None:
        classifier = EmbeddingClassifier(make_embedder(scaled=[1000.0, 0.0]), CATEGORIES)
        result = classifier.classify("scaled")
        self.assertLessEqual(result.relevance, 1.0)
        self.assertGreaterEqual(result.relevance, -1.0)

    def test_centers_embedded_once(self) -> None:
        embedder = make_embedder(one=[1.0, 0.0], two=[0.0, 1.0])
        classifier = EmbeddingClassifier(embedder, CATEGORIES)
        classifier.classify("one")
        classifier.classify("two")
        self.assertEqual(embedder.calls.count("alpha description"), 1)
        self.assertEqual(embedder.calls.count("beta description"), 1)

    def test_default_categories_in_fixed_order(self) -> None:
        names = [name for name, _ in CATEGORY_DESCRIPTIONS]
        self.assertEqual(names, ["BTC_price", "ETH_ecosystem", "Macro", "Regulation", "Exploit"])


class CosineSimilarityTests(unittest.TestCase):
    def test_zero_vector_scores_zero(self) -> None:
        self.assertEqual(cosine_similarity([0.0, 0.0], [1.0, 0.0]), 0.0)

    def test_length_mismatch_raises(self) -> None:
        with self.assertRaises(ValueError):
            cosine_similarity([1.0], [1.0, 0.0])

    def test_opposite_vectors(self) -> None:
        self.assertAlmostEqual(cosine_similarity([1.0, 2.0], [-1.0, -2.0]), -1.0)


if __name__ == "__main__":
    unittest.main()
