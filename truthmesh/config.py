from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from truthmesh.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    mongodb_uri: str = Field(default="", alias="MONGODB_URI")
    mongodb_db: str = Field(default="truthmesh", alias="MONGODB_DB")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_embedding_model: str = Field(default="text-embedding-3-small", alias="OPENAI_EMBEDDING_MODEL")
    openai_reasoning_model: str = Field(default="gpt-4o-mini", alias="OPENAI_REASONING_MODEL")
    openai_timeout_seconds: int = Field(default=20, alias="OPENAI_TIMEOUT_SECONDS")
    classifier_min_relevance: float = Field(default=0.2, alias="CLASSIFIER_MIN_RELEVANCE")

    drain_batch_size: int = Field(default=10, alias="DRAIN_BATCH_SIZE")
    drain_idle_seconds: float = Field(default=2.0, alias="DRAIN_IDLE_SECONDS")
    drain_error_backoff_seconds: float = Field(default=3.0, alias="DRAIN_ERROR_BACKOFF_SECONDS")
    drain_lock_name: str = Field(default="signal-drain", alias="DRAIN_LOCK_NAME")
    drain_lock_ttl_seconds: int = Field(default=60, alias="DRAIN_LOCK_TTL_SECONDS")
    queue_claim_ttl_seconds: int = Field(default=300, alias="QUEUE_CLAIM_TTL_SECONDS")

    oracle_private_key: str = Field(default="", alias="ORACLE_PRIVATE_KEY")
    rpc_url: str = Field(default="", alias="RPC_URL")
    prediction_oracle_address: str = Field(default="", alias="PREDICTION_ORACLE_ADDRESS")
    prediction_market_address: str = Field(default="", alias="PREDICTION_MARKET_ADDRESS")
    chain_receipt_timeout_seconds: int = Field(default=120, alias="CHAIN_RECEIPT_TIMEOUT_SECONDS")
    submission_delay_seconds: float = Field(default=2.0, alias="SUBMISSION_DELAY_SECONDS")

    ingest_max_workers: int = Field(default=4, alias="INGEST_MAX_WORKERS")

    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=3000, alias="API_PORT")
    pagination_max_limit: int = Field(default=100, alias="PAGINATION_MAX_LIMIT")

    def require(self, *names: str) -> None:
        """Raise ConfigurationError listing every named setting that is empty."""
        missing = []
        for name in names:
            value = getattr(self, name)
            if isinstance(value, str) and not value.strip():
                field = type(self).model_fields[name]
                missing.append(field.alias or name.upper())
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
