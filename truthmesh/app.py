from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import List, Optional, Sequence, Tuple

from truthmesh.clients.llm_embedder import OpenAIEmbedder
from truthmesh.clients.llm_reasoner import OpenAIReasoner
from truthmesh.config import Settings, get_settings
from truthmesh.engine.classifier import EmbeddingClassifier
from truthmesh.engine.market_linker import MarketLinker
from truthmesh.engine.prediction import PredictionEngine
from truthmesh.errors import ConfigurationError
from truthmesh.models import MarketPrediction, ModelMetadata
from truthmesh.oracle.chain import MarketSync, OracleContract, connect
from truthmesh.oracle.signer import OracleSigner
from truthmesh.storage.lock import DrainLock
from truthmesh.storage.mongo import MongoStore
from truthmesh.utils.logging import configure_logging
from truthmesh.workers.dispatcher import Dispatcher
from truthmesh.workers.ingestion import IngestionScheduler, Ingestor, SourceAdapter

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


class OraclePipeline:
    """Builds pipeline components from settings around one explicit store handle."""

    def __init__(self, settings: Settings, store: Optional[MongoStore] = None):
        self.settings = settings
        if store is None:
            settings.require("mongodb_uri")
            store = MongoStore(settings.mongodb_uri, settings.mongodb_db)
        self.store = store
        self.prediction_engine = PredictionEngine(store)

    def close(self) -> None:
        self.store.close()

    def build_dispatcher(self) -> Dispatcher:
        s = self.settings
        s.require("openai_api_key")
        embedder = OpenAIEmbedder(s.openai_api_key, s.openai_embedding_model, s.openai_timeout_seconds)
        reasoner = OpenAIReasoner(s.openai_api_key, s.openai_reasoning_model, s.openai_timeout_seconds)
        lock = DrainLock(self.store.locks_col, s.drain_lock_name, s.drain_lock_ttl_seconds)
        return Dispatcher(
            store=self.store,
            classifier=EmbeddingClassifier(embedder, min_relevance=s.classifier_min_relevance),
            reasoner=reasoner,
            prediction_engine=self.prediction_engine,
            model_metadata=ModelMetadata(
                embedding_model=s.openai_embedding_model,
                reasoning_model=s.openai_reasoning_model,
            ),
            lock=lock,
            batch_size=s.drain_batch_size,
            idle_seconds=s.drain_idle_seconds,
            error_backoff_seconds=s.drain_error_backoff_seconds,
            claim_ttl_seconds=s.queue_claim_ttl_seconds,
            worker_id=lock.owner,
        )

    def build_ingestion(self, adapters: Sequence[SourceAdapter]) -> IngestionScheduler:
        return IngestionScheduler(Ingestor(self.store), adapters, max_workers=self.settings.ingest_max_workers)

    def build_oracle(self) -> Tuple[OracleSigner, OracleContract]:
        s = self.settings
        s.require("oracle_private_key", "rpc_url", "prediction_oracle_address")
        signer = OracleSigner(s.oracle_private_key)
        contract = OracleContract(
            connect(s.rpc_url),
            s.prediction_oracle_address,
            s.oracle_private_key,
            receipt_timeout_seconds=s.chain_receipt_timeout_seconds,
        )
        return signer, contract

    def build_linker(self, submit: bool) -> MarketLinker:
        if not submit:
            return MarketLinker(self.store)
        signer, contract = self.build_oracle()
        return MarketLinker(
            self.store,
            signer=signer,
            chain=contract,
            submission_delay_seconds=self.settings.submission_delay_seconds,
        )

    def link_and_submit(self, limit: int, dry_run: bool) -> List[MarketPrediction]:
        linker = self.build_linker(submit=not dry_run)
        markets = self.store.active_markets()
        if not markets:
            logger.warning("No active markets; run sync-markets first")
            return []

        links: List[MarketPrediction] = []
        for prediction in self.store.list_predictions(limit=limit):
            links.extend(linker.link(prediction, markets))
        logger.info("Linking complete", extra={"links": len(links), "markets": len(markets)})

        if not dry_run:
            confirmed = linker.retry_unsubmitted()
            logger.info("Submission pass complete", extra={"confirmed": confirmed})
        return links

    def sync_markets(self) -> int:
        s = self.settings
        s.require("rpc_url", "prediction_market_address")
        return len(MarketSync(connect(s.rpc_url), s.prediction_market_address, self.store).sync())


def _install_stop_handlers(dispatcher: Dispatcher) -> None:
    def shutdown_handler(signum, frame):  # noqa: ANN001
        logger.info("Received signal, finishing current entry", extra={"signal": signum})
        dispatcher.stop()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)


def run_command(args: argparse.Namespace, pipeline: OraclePipeline) -> int:
    if args.command == "drain":
        dispatcher = pipeline.build_dispatcher()
        if args.once:
            result = dispatcher.drain_once()
            logger.info(
                "Drain pass complete",
                extra={"claimed": result.claimed, "processed": result.processed, "failed": result.failed},
            )
            return EXIT_OK if result.failed == 0 else EXIT_FAILURE
        _install_stop_handlers(dispatcher)
        dispatcher.run()
        return EXIT_OK

    if args.command == "process-one":
        dispatcher = pipeline.build_dispatcher()
        try:
            dispatcher.process_next()
        except Exception as exc:
            logger.exception("One-shot processing failed", extra={"error": str(exc)})
            return EXIT_FAILURE
        return EXIT_OK

    if args.command == "predict-backfill":
        created = pipeline.prediction_engine.backfill(limit=args.limit)
        logger.info("Backfill complete", extra={"predictions": len(created)})
        return EXIT_OK

    if args.command == "link-submit":
        pipeline.link_and_submit(limit=args.limit, dry_run=args.dry_run)
        return EXIT_OK

    if args.command == "sync-markets":
        count = pipeline.sync_markets()
        logger.info("Markets synced", extra={"count": count})
        return EXIT_OK

    if args.command == "preflight":
        signer, contract = pipeline.build_oracle()
        report = contract.preflight(signer)
        ok = report["message_hash_matches"] and report["eth_signed_hash_matches"] and report["signer_matches"]
        return EXIT_OK if ok else EXIT_FAILURE

    if args.command == "serve":
        import uvicorn

        from truthmesh.api.server import create_app

        s = pipeline.settings
        app = create_app(pipeline.store, max_limit=s.pagination_max_limit)
        uvicorn.run(app, host=s.api_host, port=s.api_port, log_level=s.log_level.lower())
        return EXIT_OK

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TruthMesh signal and prediction oracle pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    drain = sub.add_parser("drain", help="Drain the signal queue")
    drain.add_argument("--once", action="store_true", help="Process a single batch without the drain lock")

    sub.add_parser("process-one", help="Process one queue entry synchronously")

    backfill = sub.add_parser("predict-backfill", help="Create predictions for signals that lack one")
    backfill.add_argument("--limit", type=int, default=100)

    link = sub.add_parser("link-submit", help="Link recent predictions to markets and submit them on chain")
    link.add_argument("--limit", type=int, default=50)
    link.add_argument("--dry-run", action="store_true", help="Link only, do not sign or submit")

    sub.add_parser("sync-markets", help="Sync markets from the market contract")
    sub.add_parser("preflight", help="Check local signing against the verifier contract")
    sub.add_parser("serve", help="Serve the read API")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        pipeline = OraclePipeline(settings)
    except ConfigurationError as exc:
        logger.error("Configuration error", extra={"error": str(exc)})
        return EXIT_CONFIG

    try:
        return run_command(args, pipeline)
    except ConfigurationError as exc:
        logger.error("Configuration error", extra={"error": str(exc)})
        return EXIT_CONFIG
    finally:
        pipeline.close()


if __name__ == "__main__":
    sys.exit(main())
