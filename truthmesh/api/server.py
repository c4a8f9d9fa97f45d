"""Read-only projections of the pipeline state for the dashboard."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query

from truthmesh.models import Market, Prediction, RawEvent, Signal
from truthmesh.storage.mongo import MongoStore

API_VERSION = "0.1.0"


def create_app(store: MongoStore, max_limit: int = 100) -> FastAPI:
    app = FastAPI(
        title="TruthMesh API",
        description="Signals, predictions and markets produced by the oracle pipeline",
        version=API_VERSION,
    )

    def _limit(limit: int) -> int:
        return max(1, min(limit, max_limit))

    @app.get("/", tags=["Root"])
    def root() -> Dict[str, str]:
        return {"name": "TruthMesh API", "version": API_VERSION, "health": "/health"}

    @app.get("/health", tags=["Health"])
    def health() -> Dict[str, str]:
        db_ok = store.ping()
        return {
            "status": "ok" if db_ok else "degraded",
            "database": "connected" if db_ok else "disconnected",
            "time": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/events", response_model=List[RawEvent], tags=["Events"])
    def list_events(limit: int = Query(20, ge=1), offset: int = Query(0, ge=0)):
        return store.list_raw_events(limit=_limit(limit), offset=offset)

    @app.get("/signals", response_model=List[Signal], tags=["Signals"])
    def list_signals(
        limit: int = Query(20, ge=1),
        offset: int = Query(0, ge=0),
        category: Optional[str] = None,
    ):
        return store.list_signals(limit=_limit(limit), offset=offset, category=category)

    @app.get("/predictions", response_model=List[Prediction], tags=["Predictions"])
    def list_predictions(limit: int = Query(20, ge=1), offset: int = Query(0, ge=0)):
        return store.list_predictions(limit=_limit(limit), offset=offset)

    @app.get("/markets", response_model=List[Market], tags=["Markets"])
    def list_markets(limit: int = Query(20, ge=1), offset: int = Query(0, ge=0)):
        return store.list_markets(limit=_limit(limit), offset=offset)

    @app.get("/stats", tags=["Stats"])
    def stats() -> Dict[str, Any]:
        return store.category_stats()

    return app
