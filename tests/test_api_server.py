from __future__ import annotations

import unittest
from datetime import datetime, timezone

import mongomock
from fastapi.testclient import TestClient

from truthmesh.api.server import create_app
from truthmesh.engine.prediction import PredictionEngine
from truthmesh.models import Classification, IncomingItem, MarketState, ModelMetadata, Reasoning
from truthmesh.storage.mongo import MongoStore
from truthmesh.utils.text import content_hash


class ReadApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MongoStore("mongodb://localhost:27017", "truthmesh_test", client=mongomock.MongoClient())
        engine = PredictionEngine(self.store)
        for i, category in enumerate(["Exploit", "Macro", "Exploit"]):
            text = f"headline {i}"
            raw = self.store.insert_raw_event_if_new(IncomingItem(source="rss", text=text), content_hash(text))
            self.store.enqueue(raw.id)
            signal = self.store.insert_signal_if_new(
                raw.id,
                Classification(category=category, relevance=0.5),
                Reasoning(summary=f"summary {i}", confidence=0.6, reasoning="r"),
                ModelMetadata(),
            )
            engine.create_prediction(signal)
        self.store.upsert_market(
            "1", "Will ETH flip BTC?", datetime(2026, 3, 1, tzinfo=timezone.utc), None, MarketState.OPEN
        )
        self.client = TestClient(create_app(self.store, max_limit=2))

    def test_root(self) -> None:
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["name"], "TruthMesh API")

    def test_health_reports_degraded_database(self) -> None:
        self.store.ping = lambda: False
        body = self.client.get("/health").json()
        self.assertEqual(body["status"], "degraded")
        self.assertEqual(body["database"], "disconnected")

    def test_events_are_newest_first_and_capped(self) -> None:
        body = self.client.get("/events", params={"limit": 50}).json()
        self.assertEqual([e["text"] for e in body], ["headline 2", "headline 1"])

    def test_pagination_offset(self) -> None:
        body = self.client.get("/events", params={"limit": 2, "offset": 2}).json()
        self.assertEqual([e["text"] for e in body], ["headline 0"])

    def test_invalid_limit_rejected(self) -> None:
        self.assertEqual(self.client.get("/events", params={"limit": 0}).status_code, 422)

    def test_signals_filter_by_category(self) -> None:
        body = self.client.get("/signals", params={"category": "Macro"}).json()
        self.assertEqual(len(body), 1)
        self.assertEqual(body[0]["category"], "Macro")

    def test_predictions(self) -> None:
        body = self.client.get("/predictions").json()
        self.assertEqual(len(body), 2)
        self.assertTrue(all(0.0 <= p["prediction_value"] <= 1.0 for p in body))

    def test_markets(self) -> None:
        body = self.client.get("/markets").json()
        self.assertEqual(body[0]["question"], "Will ETH flip BTC?")
        self.assertEqual(body[0]["state"], "Open")

    def test_stats(self) -> None:
        body = self.client.get("/stats").json()
        self.assertEqual(body["totals"]["signals"], 3)
        self.assertEqual(body["totals"]["pending_queue"], 3)
        self.assertEqual(body["predictions_by_category"], {"Exploit": 2, "Macro": 1})


if __name__ == "__main__":
    unittest.main()
