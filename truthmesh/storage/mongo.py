from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from truthmesh.models import (
    ClaimedEntry,
    Classification,
    IncomingItem,
    Market,
    MarketPrediction,
    MarketState,
    ModelMetadata,
    Prediction,
    QueueEntry,
    RawEvent,
    Reasoning,
    Signal,
)

logger = logging.getLogger(__name__)

ACTIVE_MARKET_STATES = (MarketState.OPEN.value, MarketState.CLOSED.value)


class MongoStore:
    """Explicit handle over the event, queue, signal, prediction and market collections.

    Every mutation is a single-document statement. Duplicate-key conflicts on
    the idempotency indexes are reported as ``None`` rather than raised.
    """

    def __init__(self, uri: str, db_name: str, client: Optional[MongoClient] = None):
        # Ensure datetimes read from Mongo are timezone-aware (UTC).
        self.client = client if client is not None else MongoClient(uri, tz_aware=True)
        self.db = self.client[db_name]
        self.raw_events_col: Collection = self.db["raw_events"]
        self.queue_col: Collection = self.db["signal_queue"]
        self.signals_col: Collection = self.db["ai_signals"]
        self.predictions_col: Collection = self.db["predictions"]
        self.markets_col: Collection = self.db["markets"]
        self.market_predictions_col: Collection = self.db["market_predictions"]
        self.counters_col: Collection = self.db["counters"]
        self.locks_col: Collection = self.db["locks"]
        self._ensure_indexes()

    def __enter__(self) -> "MongoStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    def ping(self) -> bool:
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError as exc:
            logger.warning("Mongo ping failed", extra={"error": str(exc)})
            return False

    def _ensure_indexes(self) -> None:
        # The two load-bearing idempotency barriers.
        self.raw_events_col.create_index("content_hash", unique=True)
        self.signals_col.create_index("raw_event_id", unique=True)

        self.queue_col.create_index("raw_event_id", unique=True)
        self.queue_col.create_index([("processed", ASCENDING), ("enqueued_at", ASCENDING)])
        self.signals_col.create_index("category")
        self.predictions_col.create_index("signal_id", unique=True)
        self.markets_col.create_index("contract_market_id", unique=True)
        self.market_predictions_col.create_index(
            [("market_id", ASCENDING), ("prediction_id", ASCENDING)],
            unique=True,
            name="market_prediction_pair_unique",
        )
        # Expired drain-lock leases are purged by Mongo; liveness checks use expires_at_ts.
        self.locks_col.create_index("expires_at", expireAfterSeconds=0)

    def _next_id(self, sequence: str) -> int:
        doc = self.counters_col.find_one_and_update(
            {"_id": sequence},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["seq"])

    # -- raw events / queue -------------------------------------------------

    def insert_raw_event_if_new(self, item: IncomingItem, digest: str) -> Optional[RawEvent]:
        doc = {
            "_id": self._next_id("raw_events"),
            "source": item.source,
            "source_id": item.source_id,
            "title": item.title,
            "text": item.text,
            "url": item.url,
            "metadata": item.metadata,
            "content_hash": digest,
            "inserted_at": _now(),
        }
        try:
            self.raw_events_col.insert_one(doc)
        except DuplicateKeyError:
            return None
        return _raw_event(doc)

    def get_raw_event(self, raw_event_id: int) -> Optional[RawEvent]:
        doc = self.raw_events_col.find_one({"_id": raw_event_id})
        return _raw_event(doc) if doc else None

    def enqueue(self, raw_event_id: int) -> QueueEntry:
        doc = {
            "_id": self._next_id("signal_queue"),
            "raw_event_id": raw_event_id,
            "enqueued_at": _now(),
            "processed": False,
            "attempts": 0,
            "last_error": "",
            "claimed_by": None,
            "claim_expires_at": None,
        }
        try:
            self.queue_col.insert_one(doc)
        except DuplicateKeyError:
            existing = self.queue_col.find_one({"raw_event_id": raw_event_id})
            return _queue_entry(existing)
        return _queue_entry(doc)

    def get_queue_entry(self, queue_id: int) -> Optional[QueueEntry]:
        doc = self.queue_col.find_one({"_id": queue_id})
        return _queue_entry(doc) if doc else None

    def count_pending(self) -> int:
        return self.queue_col.count_documents({"processed": False})

    def claim_next(self, worker_id: str, lease_seconds: int) -> Optional[ClaimedEntry]:
        """Reserve the oldest unprocessed entry not currently leased by another reader.

        Entries whose raw event is gone are retired on the way. Returns None
        only when nothing claimable is left.
        """
        while True:
            now_ts = time.time()
            doc = self.queue_col.find_one_and_update(
                {
                    "processed": False,
                    "$or": [{"claim_expires_at": None}, {"claim_expires_at": {"$lte": now_ts}}],
                },
                {"$set": {"claimed_by": worker_id, "claim_expires_at": now_ts + lease_seconds}},
                sort=[("enqueued_at", ASCENDING), ("_id", ASCENDING)],
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                return None

            event = self.raw_events_col.find_one({"_id": doc["raw_event_id"]}, {"text": 1})
            if event is not None:
                return ClaimedEntry(queue_id=doc["_id"], raw_event_id=doc["raw_event_id"], text=event["text"])

            logger.warning("Queue entry references missing raw event", extra={"queue_id": doc["_id"]})
            self.mark_processed(doc["_id"])

    def claim_batch(self, worker_id: str, limit: int, lease_seconds: int) -> List[ClaimedEntry]:
        claimed: List[ClaimedEntry] = []
        while len(claimed) < limit:
            entry = self.claim_next(worker_id, lease_seconds)
            if entry is None:
                break
            claimed.append(entry)
        return claimed

    def release_claim(self, queue_id: int, worker_id: str, error: str = "", attempted: bool = True) -> None:
        update: Dict[str, Any] = {"$set": {"claimed_by": None, "claim_expires_at": None}}
        if attempted:
            update["$set"]["last_error"] = error[:500]
            update["$inc"] = {"attempts": 1}
        self.queue_col.update_one({"_id": queue_id, "claimed_by": worker_id, "processed": False}, update)

    def mark_processed(self, queue_id: int) -> bool:
        result = self.queue_col.update_one(
            {"_id": queue_id, "processed": False},
            {"$set": {"processed": True, "processed_at": _now(), "claimed_by": None, "claim_expires_at": None}},
        )
        return result.modified_count == 1

    # -- signals ------------------------------------------------------------

    def get_signal(self, signal_id: int) -> Optional[Signal]:
        doc = self.signals_col.find_one({"_id": signal_id})
        return _signal(doc) if doc else None

    def get_signal_by_raw_event(self, raw_event_id: int) -> Optional[Signal]:
        doc = self.signals_col.find_one({"raw_event_id": raw_event_id})
        return _signal(doc) if doc else None

    def insert_signal_if_new(
        self,
        raw_event_id: int,
        classification: Classification,
        reasoning: Reasoning,
        model_metadata: ModelMetadata,
    ) -> Optional[Signal]:
        doc = {
            "_id": self._next_id("ai_signals"),
            "raw_event_id": raw_event_id,
            "category": classification.category,
            "relevance": classification.relevance,
            "confidence": reasoning.confidence,
            "summary": reasoning.summary,
            "reasoning": reasoning.reasoning,
            "model_metadata": model_metadata.model_dump(),
            "created_at": _now(),
        }
        try:
            self.signals_col.insert_one(doc)
        except DuplicateKeyError:
            return None
        return _signal(doc)

    def signals_without_prediction(self, limit: int) -> List[Signal]:
        predicted = set(self.predictions_col.distinct("signal_id"))
        out: List[Signal] = []
        for doc in self.signals_col.find({}).sort("_id", ASCENDING):
            if doc["_id"] in predicted:
                continue
            out.append(_signal(doc))
            if len(out) >= limit:
                break
        return out

    # -- predictions --------------------------------------------------------

    def get_prediction(self, prediction_id: int) -> Optional[Prediction]:
        doc = self.predictions_col.find_one({"_id": prediction_id})
        return _prediction(doc) if doc else None

    def get_prediction_by_signal(self, signal_id: int) -> Optional[Prediction]:
        doc = self.predictions_col.find_one({"signal_id": signal_id})
        return _prediction(doc) if doc else None

    def insert_prediction_if_new(
        self,
        signal_id: int,
        category: str,
        summary: str,
        prediction_value: float,
        created_at: datetime,
    ) -> Optional[Prediction]:
        doc = {
            "_id": self._next_id("predictions"),
            "signal_id": signal_id,
            "category": category,
            "summary": summary,
            "prediction_value": prediction_value,
            "created_at": created_at,
        }
        try:
            self.predictions_col.insert_one(doc)
        except DuplicateKeyError:
            return None
        return _prediction(doc)

    # -- markets ------------------------------------------------------------

    def upsert_market(
        self,
        contract_market_id: str,
        question: str,
        lock_timestamp: datetime,
        resolve_timestamp: Optional[datetime],
        state: MarketState,
    ) -> Market:
        fields = {
            "question": question,
            "lock_timestamp": lock_timestamp,
            "resolve_timestamp": resolve_timestamp,
            "state": state.value,
            "updated_at": _now(),
        }
        doc = self.markets_col.find_one_and_update(
            {"contract_market_id": contract_market_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return _market(doc)

        doc = {"_id": self._next_id("markets"), "contract_market_id": contract_market_id, **fields}
        try:
            self.markets_col.insert_one(doc)
        except DuplicateKeyError:
            # Lost a race with another sync; the row exists now.
            doc = self.markets_col.find_one({"contract_market_id": contract_market_id})
        return _market(doc)

    def get_market(self, market_id: int) -> Optional[Market]:
        doc = self.markets_col.find_one({"_id": market_id})
        return _market(doc) if doc else None

    def active_markets(self) -> List[Market]:
        cursor = self.markets_col.find({"state": {"$in": list(ACTIVE_MARKET_STATES)}}).sort(
            "lock_timestamp", ASCENDING
        )
        return [_market(doc) for doc in cursor]

    # -- market predictions -------------------------------------------------

    def link_market_prediction(self, link: MarketPrediction) -> Optional[MarketPrediction]:
        doc = link.model_dump(mode="json")
        doc["created_at"] = link.created_at
        try:
            self.market_predictions_col.insert_one(doc)
        except DuplicateKeyError:
            return None
        return _market_prediction(doc)

    def get_market_prediction(self, market_id: int, prediction_id: int) -> Optional[MarketPrediction]:
        doc = self.market_predictions_col.find_one({"market_id": market_id, "prediction_id": prediction_id})
        return _market_prediction(doc) if doc else None

    def unsubmitted_market_predictions(self, prediction_id: Optional[int] = None) -> List[MarketPrediction]:
        query: Dict[str, Any] = {"submitted_to_chain": False, "submission_status": {"$ne": "rejected"}}
        if prediction_id is not None:
            query["prediction_id"] = prediction_id
        cursor = self.market_predictions_col.find(query).sort("created_at", ASCENDING)
        return [_market_prediction(doc) for doc in cursor]

    def record_pending_submission(self, market_id: int, prediction_id: int, tx_hash: str) -> None:
        self.market_predictions_col.update_one(
            {"market_id": market_id, "prediction_id": prediction_id, "submitted_to_chain": False},
            {"$set": {"pending_tx_hash": tx_hash, "submission_status": "sent"}},
        )

    def mark_submitted(self, market_id: int, prediction_id: int, tx_hash: str) -> bool:
        result = self.market_predictions_col.update_one(
            {"market_id": market_id, "prediction_id": prediction_id, "submitted_to_chain": False},
            {
                "$set": {
                    "submitted_to_chain": True,
                    "chain_tx_hash": tx_hash,
                    "pending_tx_hash": None,
                    "submission_status": "confirmed",
                    "last_error": "",
                }
            },
        )
        return result.modified_count == 1

    def record_submission_failure(self, market_id: int, prediction_id: int, status: str, error: str) -> None:
        update: Dict[str, Any] = {"submission_status": status, "last_error": error[:500]}
        if status == "failed":
            # The transaction never landed; the next attempt must send a fresh one.
            update["pending_tx_hash"] = None
        self.market_predictions_col.update_one(
            {"market_id": market_id, "prediction_id": prediction_id, "submitted_to_chain": False},
            {"$set": update},
        )

    # -- read projections ---------------------------------------------------

    def list_raw_events(self, limit: int, offset: int = 0) -> List[RawEvent]:
        cursor = self.raw_events_col.find({}).sort("_id", DESCENDING).skip(offset).limit(limit)
        return [_raw_event(doc) for doc in cursor]

    def list_signals(self, limit: int, offset: int = 0, category: Optional[str] = None) -> List[Signal]:
        query = {"category": category} if category else {}
        cursor = self.signals_col.find(query).sort("_id", DESCENDING).skip(offset).limit(limit)
        return [_signal(doc) for doc in cursor]

    def list_predictions(self, limit: int, offset: int = 0) -> List[Prediction]:
        cursor = self.predictions_col.find({}).sort("_id", DESCENDING).skip(offset).limit(limit)
        return [_prediction(doc) for doc in cursor]

    def list_markets(self, limit: int, offset: int = 0) -> List[Market]:
        cursor = self.markets_col.find({}).sort("lock_timestamp", ASCENDING).skip(offset).limit(limit)
        return [_market(doc) for doc in cursor]

    def category_stats(self) -> Dict[str, Any]:
        return {
            "totals": {
                "raw_events": self.raw_events_col.count_documents({}),
                "pending_queue": self.count_pending(),
                "signals": self.signals_col.count_documents({}),
                "predictions": self.predictions_col.count_documents({}),
                "markets": self.markets_col.count_documents({}),
                "market_predictions": self.market_predictions_col.count_documents({}),
            },
            "signals_by_category": self._count_by_category(self.signals_col),
            "predictions_by_category": self._count_by_category(self.predictions_col),
        }

    @staticmethod
    def _count_by_category(col: Collection) -> Dict[str, int]:
        rows = col.aggregate([{"$group": {"_id": "$category", "count": {"$sum": 1}}}])
        return {str(row["_id"]): int(row["count"]) for row in rows}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: object) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _raw_event(doc: Dict[str, Any]) -> RawEvent:
    return RawEvent(
        id=doc["_id"],
        source=doc["source"],
        source_id=doc.get("source_id"),
        title=doc.get("title"),
        text=doc["text"],
        url=doc.get("url"),
        metadata=doc.get("metadata") or {},
        content_hash=doc["content_hash"],
        inserted_at=_as_utc(doc["inserted_at"]),
    )


def _queue_entry(doc: Dict[str, Any]) -> QueueEntry:
    return QueueEntry(
        id=doc["_id"],
        raw_event_id=doc["raw_event_id"],
        enqueued_at=_as_utc(doc["enqueued_at"]),
        processed=bool(doc.get("processed")),
        attempts=int(doc.get("attempts", 0)),
        last_error=doc.get("last_error") or "",
    )


def _signal(doc: Dict[str, Any]) -> Signal:
    return Signal(
        id=doc["_id"],
        raw_event_id=doc["raw_event_id"],
        category=doc["category"],
        relevance=doc["relevance"],
        confidence=doc["confidence"],
        summary=doc.get("summary", ""),
        reasoning=doc.get("reasoning", ""),
        model_metadata=ModelMetadata(**(doc.get("model_metadata") or {})),
        created_at=_as_utc(doc["created_at"]),
    )


def _prediction(doc: Dict[str, Any]) -> Prediction:
    return Prediction(
        id=doc["_id"],
        signal_id=doc["signal_id"],
        category=doc["category"],
        summary=doc.get("summary", ""),
        prediction_value=doc["prediction_value"],
        created_at=_as_utc(doc["created_at"]),
    )


def _market(doc: Dict[str, Any]) -> Market:
    return Market(
        id=doc["_id"],
        contract_market_id=doc["contract_market_id"],
        question=doc["question"],
        lock_timestamp=_as_utc(doc["lock_timestamp"]),
        resolve_timestamp=_as_utc(doc.get("resolve_timestamp")),
        state=MarketState(doc.get("state", MarketState.OPEN.value)),
    )


def _market_prediction(doc: Dict[str, Any]) -> MarketPrediction:
    return MarketPrediction(
        market_id=doc["market_id"],
        prediction_id=doc["prediction_id"],
        market_outcome=doc["market_outcome"],
        confidence=doc["confidence"],
        submitted_to_chain=bool(doc.get("submitted_to_chain")),
        chain_tx_hash=doc.get("chain_tx_hash"),
        pending_tx_hash=doc.get("pending_tx_hash"),
        submission_status=doc.get("submission_status", "pending"),
        last_error=doc.get("last_error") or "",
        created_at=_as_utc(doc["created_at"]),
    )
