from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Protocol, Set

from truthmesh.errors import SignatureRejectedError, SubmissionError
from truthmesh.models import Market, MarketOutcome, MarketPrediction, Prediction, SignedPrediction
from truthmesh.oracle.signer import OracleSigner
from truthmesh.storage.mongo import MongoStore
from truthmesh.utils.text import content_words

logger = logging.getLogger(__name__)


class ChainSubmitter(Protocol):
    def submit_prediction(self, signed: SignedPrediction) -> str:
        ...

    def wait_for_receipt(self, tx_hash: str) -> dict:
        ...


def derive_outcome(prediction_value: float) -> MarketOutcome:
    return MarketOutcome.YES if prediction_value > 0.5 else MarketOutcome.NO


def market_matches(question: str, words: Set[str]) -> bool:
    return bool(content_words(question) & words)


class MarketLinker:
    """Links predictions to lexically related markets and submits them on chain.

    A link is submitted at most once per (prediction, market) pair: the sent
    transaction hash is recorded before waiting, so a retry only waits for the
    same transaction instead of sending a second one.
    """

    def __init__(
        self,
        store: MongoStore,
        signer: Optional[OracleSigner] = None,
        chain: Optional[ChainSubmitter] = None,
        submission_delay_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.signer = signer
        self.chain = chain
        self.submission_delay_seconds = submission_delay_seconds
        self._sleep = sleep

    def link(self, prediction: Prediction, candidate_markets: Optional[Iterable[Market]] = None) -> List[MarketPrediction]:
        markets = list(candidate_markets) if candidate_markets is not None else self.store.active_markets()
        signal = self.store.get_signal(prediction.signal_id)
        if signal is None:
            logger.warning("Prediction has no signal", extra={"prediction_id": prediction.id})
            return []

        source_text = prediction.summary
        raw_event = self.store.get_raw_event(signal.raw_event_id)
        if raw_event is not None:
            source_text = f"{source_text} {raw_event.text}"
        words = content_words(source_text)

        outcome = derive_outcome(prediction.prediction_value)
        links: List[MarketPrediction] = []
        for market in markets:
            if not market_matches(market.question, words):
                continue

            link = MarketPrediction(
                market_id=market.id,
                prediction_id=prediction.id,
                market_outcome=outcome,
                confidence=signal.confidence,
                created_at=datetime.now(timezone.utc),
            )
            stored = self.store.link_market_prediction(link)
            if stored is None:
                stored = self.store.get_market_prediction(market.id, prediction.id)
            else:
                logger.info(
                    "Linked prediction to market",
                    extra={"prediction_id": prediction.id, "market_id": market.id, "outcome": outcome.value},
                )
            links.append(stored)
        return links

    def submit(self, prediction: Prediction, links: Iterable[MarketPrediction]) -> List[MarketPrediction]:
        if self.signer is None or self.chain is None:
            raise RuntimeError("MarketLinker needs a signer and a chain client to submit")

        out: List[MarketPrediction] = []
        pending = [x for x in links if not x.submitted_to_chain and x.submission_status != "rejected"]
        for i, link in enumerate(pending):
            if i > 0 and self.submission_delay_seconds > 0:
                self._sleep(self.submission_delay_seconds)
            self._submit_one(prediction, link)
            out.append(self.store.get_market_prediction(link.market_id, link.prediction_id))
        return out

    def link_and_submit(
        self,
        prediction: Prediction,
        candidate_markets: Optional[Iterable[Market]] = None,
        dry_run: bool = False,
    ) -> List[MarketPrediction]:
        links = self.link(prediction, candidate_markets)
        if dry_run or not links:
            return links
        submitted = {(x.market_id, x.prediction_id): x for x in self.submit(prediction, links)}
        return [submitted.get((x.market_id, x.prediction_id), x) for x in links]

    def retry_unsubmitted(self) -> int:
        """Resubmit every unconfirmed link left behind by earlier runs. Returns confirmed count."""
        confirmed = 0
        for link in self.store.unsubmitted_market_predictions():
            prediction = self.store.get_prediction(link.prediction_id)
            if prediction is None:
                continue
            for result in self.submit(prediction, [link]):
                confirmed += int(result is not None and result.submitted_to_chain)
        return confirmed

    def _submit_one(self, prediction: Prediction, link: MarketPrediction) -> None:
        ctx = {"prediction_id": prediction.id, "market_id": link.market_id}
        try:
            tx_hash = link.pending_tx_hash
            if tx_hash:
                logger.info("Awaiting previously sent submission", extra={**ctx, "tx_hash": tx_hash})
            else:
                signed = self.signer.sign_values(prediction.id, prediction.prediction_value, link.confidence)
                tx_hash = self.chain.submit_prediction(signed)
                self.store.record_pending_submission(link.market_id, link.prediction_id, tx_hash)
                logger.info("Submitted prediction", extra={**ctx, "tx_hash": tx_hash, "message_hash": signed.message_hash})

            self.chain.wait_for_receipt(tx_hash)
            self.store.mark_submitted(link.market_id, link.prediction_id, tx_hash)
            logger.info("Submission confirmed", extra={**ctx, "tx_hash": tx_hash})
        except SignatureRejectedError as exc:
            logger.critical("Verifier rejected oracle signature; not retrying", extra={**ctx, "error": str(exc)})
            self.store.record_submission_failure(link.market_id, link.prediction_id, "rejected", str(exc))
        except SubmissionError as exc:
            status = "unconfirmed" if exc.tx_hash else "failed"
            logger.warning("Submission not confirmed", extra={**ctx, "status": status, "error": str(exc)})
            self.store.record_submission_failure(link.market_id, link.prediction_id, status, str(exc))
