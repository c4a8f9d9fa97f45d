from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

MODEL_METADATA_SCHEMA_VERSION = 1


class MarketState(str, Enum):
    OPEN = "Open"
    CLOSED = "Closed"
    PROVISIONAL = "Provisional"
    DISPUTED = "Disputed"
    FINALIZED = "Finalized"
    CANCELLED = "Cancelled"


class MarketOutcome(str, Enum):
    YES = "Yes"
    NO = "No"


class IncomingItem(BaseModel):
    """Text plus source identity as produced by an ingestion adapter."""

    source: str
    text: str
    source_id: Optional[str] = None
    title: Optional[str] = None
    url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RawEvent(BaseModel):
    id: int
    source: str
    source_id: Optional[str] = None
    title: Optional[str] = None
    text: str
    url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    content_hash: str
    inserted_at: datetime


class QueueEntry(BaseModel):
    id: int
    raw_event_id: int
    enqueued_at: datetime
    processed: bool = False
    attempts: int = 0
    last_error: str = ""


class ClaimedEntry(BaseModel):
    """A queue entry reserved by one worker, joined with its event text."""

    queue_id: int
    raw_event_id: int
    text: str


class Classification(BaseModel):
    category: str
    relevance: float


class Reasoning(BaseModel):
    summary: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str


class ModelMetadata(BaseModel):
    schema_version: int = MODEL_METADATA_SCHEMA_VERSION
    embedding_model: str = ""
    reasoning_model: str = ""


class Signal(BaseModel):
    id: int
    raw_event_id: int
    category: str
    relevance: float = Field(ge=-1.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    summary: str
    reasoning: str
    model_metadata: ModelMetadata = Field(default_factory=ModelMetadata)
    created_at: datetime


class Prediction(BaseModel):
    id: int
    signal_id: int
    category: str
    summary: str
    prediction_value: float = Field(ge=0.0, le=1.0)
    created_at: datetime


class Market(BaseModel):
    id: int
    contract_market_id: str
    question: str
    lock_timestamp: datetime
    resolve_timestamp: Optional[datetime] = None
    state: MarketState = MarketState.OPEN


class MarketPrediction(BaseModel):
    market_id: int
    prediction_id: int
    market_outcome: MarketOutcome
    confidence: float = Field(ge=0.0, le=1.0)
    submitted_to_chain: bool = False
    chain_tx_hash: Optional[str] = None
    pending_tx_hash: Optional[str] = None
    submission_status: str = "pending"
    last_error: str = ""
    created_at: datetime


class SignedPrediction(BaseModel):
    id: int
    prediction: int
    confidence: int
    signature: str
    signer_address: str
    message_hash: str
    eth_signed_message_hash: str
