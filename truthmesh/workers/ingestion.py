from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from truthmesh.models import IncomingItem, QueueEntry
from truthmesh.storage.mongo import MongoStore
from truthmesh.utils.text import content_hash, normalize_snippet

logger = logging.getLogger(__name__)


class SourceAdapter:
    source_name: str = "unknown"

    def fetch_items(self) -> List[IncomingItem]:
        raise NotImplementedError


class Ingestor:
    def __init__(self, store: MongoStore):
        self.store = store

    def ingest(self, item: IncomingItem) -> Optional[QueueEntry]:
        """Store and enqueue the item unless its normalized text was seen before."""
        text = normalize_snippet(item.text)
        if not text:
            logger.debug("Skipping empty item", extra={"source": item.source})
            return None

        normalized = item.model_copy(update={"text": text})
        raw_event = self.store.insert_raw_event_if_new(normalized, content_hash(text))
        if raw_event is None:
            return None
        return self.store.enqueue(raw_event.id)


@dataclass
class SourceReport:
    source: str
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    error: str = ""


@dataclass
class IngestionReport:
    sources: Dict[str, SourceReport] = field(default_factory=dict)

    @property
    def inserted(self) -> int:
        return sum(r.inserted for r in self.sources.values())

    @property
    def failures(self) -> List[SourceReport]:
        return [r for r in self.sources.values() if r.error]


class IngestionScheduler:
    """Runs every adapter on a bounded pool and waits for all of them."""

    def __init__(self, ingestor: Ingestor, adapters: Sequence[SourceAdapter], max_workers: int = 4):
        self.ingestor = ingestor
        self.adapters = list(adapters)
        self.max_workers = max(1, max_workers)

    def run_once(self) -> IngestionReport:
        report = IngestionReport()
        if not self.adapters:
            logger.warning("No ingestion adapters configured")
            return report

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ingest") as pool:
            futures = {pool.submit(self._run_adapter, adapter): adapter for adapter in self.adapters}
            for future in as_completed(futures):
                adapter = futures[future]
                try:
                    source_report = future.result()
                except Exception as exc:
                    source_report = SourceReport(source=adapter.source_name, error=str(exc))
                    logger.warning("Adapter failed", extra={"source": adapter.source_name, "error": str(exc)})
                report.sources[source_report.source] = source_report

        logger.info(
            "Ingestion pass complete",
            extra={"inserted": report.inserted, "failed_sources": len(report.failures)},
        )
        return report

    def _run_adapter(self, adapter: SourceAdapter) -> SourceReport:
        source_report = SourceReport(source=adapter.source_name)
        for item in adapter.fetch_items():
            source_report.fetched += 1
            if self.ingestor.ingest(item) is None:
                source_report.duplicates += 1
            else:
                source_report.inserted += 1
        return source_report
