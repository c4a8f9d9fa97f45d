from __future__ import annotations

import logging
from typing import Any, List, Optional

from openai import APIConnectionError, APITimeoutError, OpenAI, RateLimitError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from truthmesh.errors import ConfigurationError, TransientServiceError

logger = logging.getLogger(__name__)

_RETRYABLE = (APIConnectionError, APITimeoutError, RateLimitError)


class OpenAIEmbedder:
    def __init__(self, api_key: str, model: str, timeout_seconds: int = 20, client: Optional[Any] = None):
        self.model = model
        if client is None:
            if not api_key.strip():
                raise ConfigurationError("OPENAI_API_KEY is required for embeddings")
            client = OpenAI(api_key=api_key.strip(), timeout=timeout_seconds)
        self._client = client

    def embed(self, text: str) -> List[float]:
        try:
            return self._create(text)
        except _RETRYABLE as exc:
            raise TransientServiceError(f"Embedding request failed: {exc}", service="openai-embeddings") from exc

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _create(self, text: str) -> List[float]:
        response = self._client.embeddings.create(model=self.model, input=text)
        return [float(x) for x in response.data[0].embedding]
