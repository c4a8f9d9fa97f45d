from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Protocol

from truthmesh.errors import MalformedResponseError, TransientServiceError
from truthmesh.engine.prediction import PredictionEngine
from truthmesh.models import ClaimedEntry, Classification, ModelMetadata, Reasoning, Signal
from truthmesh.storage.lock import DrainLock, default_owner_id
from truthmesh.storage.mongo import MongoStore

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    def classify(self, text: str) -> Classification:
        ...


class Reasoner(Protocol):
    def reason(self, text: str, category: str) -> Reasoning:
        ...


@dataclass
class DrainResult:
    claimed: int = 0
    processed: int = 0
    failed: int = 0


class Dispatcher:
    """Single consumer of the signal queue.

    ``run`` drains continuously while holding the drain lock; ``drain_once``
    handles one batch; ``process_next`` handles a single entry without the
    lock for synchronous callers. Entries are reserved with a non-blocking
    claim so concurrent readers never process the same entry twice.
    """

    def __init__(
        self,
        store: MongoStore,
        classifier: Classifier,
        reasoner: Reasoner,
        prediction_engine: PredictionEngine,
        model_metadata: ModelMetadata,
        lock: Optional[DrainLock] = None,
        batch_size: int = 10,
        idle_seconds: float = 2.0,
        error_backoff_seconds: float = 3.0,
        claim_ttl_seconds: int = 300,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.classifier = classifier
        self.reasoner = reasoner
        self.prediction_engine = prediction_engine
        self.model_metadata = model_metadata
        self.lock = lock
        self.batch_size = batch_size
        self.idle_seconds = idle_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.claim_ttl_seconds = claim_ttl_seconds
        self.worker_id = worker_id or default_owner_id()
        self.processed_total = 0
        self.failed_total = 0
        self._stop = threading.Event()
        self._lease_lost = False

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> bool:
        """Drain until stopped. Returns False immediately if another process holds the drain lock."""
        if self.lock is None:
            raise RuntimeError("Continuous drain requires a DrainLock")
        if not self.lock.acquire():
            logger.info("Another drain loop holds the lock, exiting", extra={"lock": self.lock.name})
            return False
        self._lease_lost = False

        logger.info("Drain loop started", extra={"worker_id": self.worker_id, "batch_size": self.batch_size})
        try:
            while not self._stop.is_set():
                if self._lease_lost or not self.lock.renew():
                    logger.error("Drain lock lease lost, exiting", extra={"lock": self.lock.name})
                    break
                try:
                    result = self.drain_once()
                except Exception as exc:
                    logger.exception("Drain pass failed", extra={"error": str(exc)})
                    self._stop.wait(self.error_backoff_seconds)
                    continue

                if result.claimed == 0:
                    self._stop.wait(self.idle_seconds)
                elif result.processed == 0:
                    # Whole batch failed; wait before reclaiming it.
                    self._stop.wait(self.error_backoff_seconds)
        finally:
            self.lock.release()
            logger.info(
                "Drain loop stopped",
                extra={"processed": self.processed_total, "failed": self.failed_total},
            )
        return True

    def drain_once(self) -> DrainResult:
        batch = self.store.claim_batch(self.worker_id, self.batch_size, self.claim_ttl_seconds)
        result = DrainResult(claimed=len(batch))

        for i, entry in enumerate(batch):
            if self._stop.is_set():
                self._release_all(batch[i:])
                break
            try:
                self._process(entry)
                result.processed += 1
            except (MalformedResponseError, TransientServiceError) as exc:
                result.failed += 1
                self._fail(entry, exc, expected=True)
            except Exception as exc:
                result.failed += 1
                self._fail(entry, exc, expected=False)
            if self.lock is not None and not self._stop.is_set() and not self.lock.renew():
                # Another drain loop may own the queue now; hand back what is left.
                self._lease_lost = True
                self._release_all(batch[i + 1 :])
                break

        self.processed_total += result.processed
        self.failed_total += result.failed
        return result

    def process_next(self) -> Optional[Signal]:
        """Process the oldest claimable entry without the drain lock.

        Returns None when the queue is empty. Failures propagate to the caller
        after the claim is released so the entry stays retryable.
        """
        entry = self.store.claim_next(self.worker_id, self.claim_ttl_seconds)
        if entry is None:
            logger.info("No pending queue entries")
            return None
        try:
            return self._process(entry)
        except Exception as exc:
            self.store.release_claim(entry.queue_id, self.worker_id, error=str(exc))
            raise

    def _process(self, entry: ClaimedEntry) -> Signal:
        ctx = {"queue_id": entry.queue_id, "raw_event_id": entry.raw_event_id}

        existing = self.store.get_signal_by_raw_event(entry.raw_event_id)
        if existing is not None:
            logger.info("Signal already exists, marking processed", extra=ctx)
            self.prediction_engine.create_prediction(existing)
            self.store.mark_processed(entry.queue_id)
            return existing

        classification = self.classifier.classify(entry.text)
        reasoning = self.reasoner.reason(entry.text, classification.category)

        signal = self.store.insert_signal_if_new(entry.raw_event_id, classification, reasoning, self.model_metadata)
        if signal is None:
            signal = self.store.get_signal_by_raw_event(entry.raw_event_id)

        self.prediction_engine.create_prediction(signal)
        self.store.mark_processed(entry.queue_id)

        logger.info(
            "Processed queue entry",
            extra={
                **ctx,
                "category": signal.category,
                "relevance": round(signal.relevance, 3),
                "confidence": signal.confidence,
            },
        )
        return signal

    def _fail(self, entry: ClaimedEntry, exc: Exception, expected: bool) -> None:
        ctx = {"queue_id": entry.queue_id, "raw_event_id": entry.raw_event_id, "error": str(exc)}
        if expected:
            logger.warning("Queue entry failed, will retry", extra={**ctx, "kind": type(exc).__name__})
        else:
            logger.exception("Queue entry failed unexpectedly, will retry", extra=ctx)
        self.store.release_claim(entry.queue_id, self.worker_id, error=str(exc))

    def _release_all(self, entries: List[ClaimedEntry]) -> None:
        for entry in entries:
            self.store.release_claim(entry.queue_id, self.worker_id, attempted=False)
