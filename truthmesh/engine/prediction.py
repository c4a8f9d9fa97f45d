from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List

from truthmesh.models import Prediction, Signal
from truthmesh.storage.mongo import MongoStore

logger = logging.getLogger(__name__)

# Historical predictions are only reproducible while these stay fixed.
CATEGORY_WEIGHTS: Dict[str, float] = {
    "BTC_price": 1.1,
    "ETH_ecosystem": 1.0,
    "Macro": 0.9,
    "Regulation": 0.8,
    "Exploit": 1.3,
    "Other": 0.7,
}
DEFAULT_CATEGORY_WEIGHT = CATEGORY_WEIGHTS["Other"]
_FOUR_PLACES = Decimal("0.0001")


def round_half_up(value: float) -> float:
    # Rounds the exact binary value, ties away from zero, as Number.toFixed(4) does.
    return float(Decimal(value).quantize(_FOUR_PLACES, rounding=ROUND_HALF_UP))


def category_weight(category: str) -> float:
    return CATEGORY_WEIGHTS.get(category, DEFAULT_CATEGORY_WEIGHT)


def score(relevance: float, confidence: float, category: str) -> float:
    """Blend relevance and confidence, weight by category, clamp to [0, 1], round to 4 places."""
    if not (math.isfinite(relevance) and math.isfinite(confidence)):
        raise ValueError(f"Non-finite score inputs: relevance={relevance} confidence={confidence}")

    raw = 0.5 * relevance + 0.5 * confidence
    weighted = raw * category_weight(category)
    clamped = max(0.0, min(1.0, weighted))
    return round_half_up(clamped)


def create_prediction_fields(signal: Signal) -> Dict[str, object]:
    return {
        "signal_id": signal.id,
        "category": signal.category,
        "summary": signal.summary,
        "prediction_value": score(signal.relevance, signal.confidence, signal.category),
        "created_at": datetime.now(timezone.utc),
    }


class PredictionEngine:
    """Owns Prediction creation; at most one Prediction per Signal."""

    def __init__(self, store: MongoStore):
        self.store = store

    def create_prediction(self, signal: Signal) -> Prediction:
        existing = self.store.get_prediction_by_signal(signal.id)
        if existing is not None:
            return existing

        created = self.store.insert_prediction_if_new(**create_prediction_fields(signal))
        if created is None:
            # Another writer got there first.
            created = self.store.get_prediction_by_signal(signal.id)
        logger.info(
            "Prediction ready",
            extra={"signal_id": signal.id, "prediction_id": created.id, "value": created.prediction_value},
        )
        return created

    def backfill(self, limit: int = 100) -> List[Prediction]:
        out: List[Prediction] = []
        for signal in self.store.signals_without_prediction(limit):
            out.append(self.create_prediction(signal))
        if not out:
            logger.info("No pending signals without predictions")
        return out
