from __future__ import annotations

import unittest
from datetime import datetime, timezone
from typing import Dict, List

import mongomock

from truthmesh.engine.market_linker import MarketLinker, market_matches
from truthmesh.engine.prediction import PredictionEngine
from truthmesh.errors import SignatureRejectedError, SubmissionError
from truthmesh.models import (
    Classification,
    IncomingItem,
    MarketOutcome,
    MarketState,
    ModelMetadata,
    Prediction,
    Reasoning,
    SignedPrediction,
)
from truthmesh.oracle.signer import OracleSigner
from truthmesh.storage.mongo import MongoStore
from truthmesh.utils.text import content_hash, content_words

TEST_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
LOCK_TS = datetime(2026, 6, 1, tzinfo=timezone.utc)


class FakeChain:
    def __init__(self) -> None:
        self.submitted: List[SignedPrediction] = []
        self.waited: List[str] = []
        self.submit_errors: List[Exception] = []
        self.wait_errors: List[Exception] = []

    def submit_prediction(self, signed: SignedPrediction) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted.append(signed)
        return f"0x{len(self.submitted):064x}"

    def wait_for_receipt(self, tx_hash: str) -> Dict[str, int]:
        self.waited.append(tx_hash)
        if self.wait_errors:
            raise self.wait_errors.pop(0)
        return {"status": 1}


class MarketLinkerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MongoStore("mongodb://localhost:27017", "truthmesh_test", client=mongomock.MongoClient())
        self.chain = FakeChain()
        self.sleeps: List[float] = []
        self.linker = MarketLinker(
            self.store,
            signer=OracleSigner(TEST_KEY),
            chain=self.chain,
            submission_delay_seconds=2.0,
            sleep=self.sleeps.append,
        )
        self.btc = self.store.upsert_market("1", "Will Bitcoin close above 100k?", LOCK_TS, None, MarketState.OPEN)
        self.fed = self.store.upsert_market("2", "Will the Fed cut rates in March?", LOCK_TS, None, MarketState.OPEN)
        self.prediction = self._prediction("Bitcoin ETF inflows hit a record", "Bitcoin ETF demand surges")

    def _prediction(self, text: str, summary: str) -> Prediction:
        raw = self.store.insert_raw_event_if_new(IncomingItem(source="test", text=text), content_hash(text))
        signal = self.store.insert_signal_if_new(
            raw.id,
            Classification(category="BTC_price", relevance=0.8),
            Reasoning(summary=summary, confidence=0.9, reasoning="r"),
            ModelMetadata(),
        )
        return PredictionEngine(self.store).create_prediction(signal)

    def test_market_matches_on_shared_word(self) -> None:
        words = content_words("Bitcoin treasury buys")
        self.assertTrue(market_matches("Will Bitcoin close above 100k?", words))
        self.assertFalse(market_matches("Will the Fed cut rates in March?", words))

    def test_link_only_related_markets(self) -> None:
        links = self.linker.link(self.prediction)
        self.assertEqual([x.market_id for x in links], [self.btc.id])
        self.assertEqual(links[0].market_outcome, MarketOutcome.YES)
        self.assertEqual(links[0].confidence, 0.9)
        self.assertFalse(links[0].submitted_to_chain)

    def test_link_is_idempotent(self) -> None:
        self.linker.link(self.prediction)
        again = self.linker.link(self.prediction)
        self.assertEqual(len(again), 1)
        self.assertEqual(self.store.market_predictions_col.count_documents({}), 1)

    def test_low_prediction_links_as_no(self) -> None:
        low = self.store.insert_prediction_if_new(999, "Other", "Bitcoin miners quiet", 0.5, LOCK_TS)
        raw = self.store.insert_raw_event_if_new(IncomingItem(source="t", text="quiet"), content_hash("quiet"))
        self.store.signals_col.insert_one(
            {
                "_id": 999,
                "raw_event_id": raw.id,
                "category": "Other",
                "relevance": 0.1,
                "confidence": 0.3,
                "summary": "Bitcoin miners quiet",
                "reasoning": "r",
                "model_metadata": {},
                "created_at": LOCK_TS,
            }
        )
        links = self.linker.link(low)
        self.assertEqual(links[0].market_outcome, MarketOutcome.NO)

    def test_submit_signs_scaled_values_once(self) -> None:
        links = self.linker.link_and_submit(self.prediction)

        self.assertEqual(len(self.chain.submitted), 1)
        signed = self.chain.submitted[0]
        self.assertEqual(signed.id, self.prediction.id)
        self.assertEqual(signed.prediction, 935_000)
        self.assertEqual(signed.confidence, 900_000)
        self.assertTrue(links[0].submitted_to_chain)
        self.assertEqual(links[0].chain_tx_hash, f"0x{1:064x}")

        self.linker.link_and_submit(self.prediction)
        self.assertEqual(len(self.chain.submitted), 1)

    def test_dry_run_does_not_submit(self) -> None:
        links = self.linker.link_and_submit(self.prediction, dry_run=True)
        self.assertEqual(len(links), 1)
        self.assertEqual(self.chain.submitted, [])

    def test_unconfirmed_submission_waits_on_same_transaction(self) -> None:
        self.chain.wait_errors.append(SubmissionError("not mined yet", tx_hash=f"0x{1:064x}"))
        links = self.linker.link_and_submit(self.prediction)
        self.assertFalse(links[0].submitted_to_chain)
        self.assertEqual(links[0].submission_status, "unconfirmed")
        self.assertEqual(links[0].pending_tx_hash, f"0x{1:064x}")

        self.assertEqual(self.linker.retry_unsubmitted(), 1)
        self.assertEqual(len(self.chain.submitted), 1)
        self.assertEqual(self.chain.waited, [f"0x{1:064x}", f"0x{1:064x}"])
        self.assertTrue(self.store.get_market_prediction(self.btc.id, self.prediction.id).submitted_to_chain)

    def test_reverted_submission_is_resent(self) -> None:
        self.chain.wait_errors.append(SubmissionError("reverted"))
        links = self.linker.link_and_submit(self.prediction)
        self.assertEqual(links[0].submission_status, "failed")
        self.assertIsNone(links[0].pending_tx_hash)

        self.assertEqual(self.linker.retry_unsubmitted(), 1)
        self.assertEqual(len(self.chain.submitted), 2)

    def test_rejected_signature_is_not_retried(self) -> None:
        self.chain.submit_errors.append(SignatureRejectedError("Invalid signer"))
        with self.assertLogs("truthmesh.engine.market_linker", level="CRITICAL"):
            links = self.linker.link_and_submit(self.prediction)
        self.assertEqual(links[0].submission_status, "rejected")

        self.assertEqual(self.linker.retry_unsubmitted(), 0)
        self.assertEqual(self.chain.submitted, [])

    def test_delay_between_submissions(self) -> None:
        self.store.upsert_market("3", "Bitcoin dominance above 60%?", LOCK_TS, None, MarketState.OPEN)
        self.linker.link_and_submit(self.prediction)
        self.assertEqual(len(self.chain.submitted), 2)
        self.assertEqual(self.sleeps, [2.0])

    def test_submit_requires_signer_and_chain(self) -> None:
        linker = MarketLinker(self.store)
        links = linker.link(self.prediction)
        with self.assertRaises(RuntimeError):
            linker.submit(self.prediction, links)


if __name__ == "__main__":
    unittest.main()
