from __future__ import annotations

import logging
import math
import threading
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from truthmesh.models import Classification

logger = logging.getLogger(__name__)

OTHER_CATEGORY = "Other"

# Enumeration order is the tie-break order.
CATEGORY_DESCRIPTIONS: Tuple[Tuple[str, str], ...] = (
    ("BTC_price", "Bitcoin price movement, market volatility, ETF flows, macro BTC trends"),
    ("ETH_ecosystem", "Ethereum L2, rollups, staking, MEV, dev updates, protocols"),
    ("Macro", "inflation, CPI, Fed interest rates, macro economy, geopolitical events"),
    ("Regulation", "crypto regulation, government policy, SEC, bans, compliance"),
    ("Exploit", "hacks, exploits, vulnerabilities, protocol failures"),
)


class Embedder(Protocol):
    def embed(self, text: str) -> List[float]:
        ...


class EmbeddingClassifier:
    """Nearest-center classifier over embedding cosine similarity.

    Category centers are embedded lazily on first use and cached for the life
    of the instance. Text whose best similarity is below ``min_relevance``
    falls back to ``Other`` while keeping that similarity as its relevance.
    """

    def __init__(
        self,
        embedder: Embedder,
        categories: Sequence[Tuple[str, str]] = CATEGORY_DESCRIPTIONS,
        min_relevance: float = 0.2,
    ):
        self.embedder = embedder
        self.categories = tuple(categories)
        self.min_relevance = min_relevance
        self._centers: Optional[Dict[str, List[float]]] = None
        self._lock = threading.Lock()

    def classify(self, text: str) -> Classification:
        text_vec = self.embedder.embed(text)
        centers = self._category_centers()

        best_category = OTHER_CATEGORY
        best_score = -1.0
        for category, _ in self.categories:
            score = cosine_similarity(text_vec, centers[category])
            if score > best_score:
                best_score = score
                best_category = category

        if best_score < self.min_relevance:
            logger.debug(
                "No category above threshold",
                extra={"best_category": best_category, "relevance": round(best_score, 4)},
            )
            best_category = OTHER_CATEGORY

        return Classification(category=best_category, relevance=best_score)

    def _category_centers(self) -> Dict[str, List[float]]:
        if self._centers is None:
            with self._lock:
                if self._centers is None:
                    self._centers = {name: self.embedder.embed(description) for name, description in self.categories}
        return self._centers


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))
