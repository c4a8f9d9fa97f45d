from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Optional

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI, RateLimitError

from truthmesh.errors import ConfigurationError, MalformedResponseError, TransientServiceError
from truthmesh.models import Reasoning

logger = logging.getLogger(__name__)

MISSING_REASONING = "No reasoning provided by AI model."

_INSTRUCTIONS = (
    "You are an AI signal extraction model for a prediction market agent.\n"
    "Input text:\n"
    '"{text}"\n\n'
    "Detected category: {category}\n\n"
    "Your job:\n"
    "1. Provide a one-sentence summary.\n"
    "2. Rate how confidently this text impacts the category (0 to 1).\n"
    "3. Explain your reasoning step-by-step for how this text relates to the category.\n"
    "4. Output JSON only.\n\n"
    "JSON format:\n"
    '{{"summary": "...", "confidence": 0.0, '
    '"reasoning": "Step-by-step explanation of how this text relates to the category..."}}'
)


class OpenAIReasoner:
    def __init__(self, api_key: str, model: str, timeout_seconds: int = 20, client: Optional[Any] = None):
        self.model = model
        if client is None:
            if not api_key.strip():
                raise ConfigurationError("OPENAI_API_KEY is required for reasoning")
            client = OpenAI(api_key=api_key.strip(), timeout=timeout_seconds)
        self._client = client

    def reason(self, text: str, category: str) -> Reasoning:
        prompt = _INSTRUCTIONS.format(text=text, category=category)
        try:
            response = self._client.responses.create(
                model=self.model,
                temperature=0,
                input=[{"role": "user", "content": prompt}],
            )
        except (APIConnectionError, APITimeoutError, RateLimitError) as exc:
            raise TransientServiceError(f"Reasoning request failed: {exc}", service="openai-responses") from exc
        except APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientServiceError(f"Reasoning request failed: {exc}", service="openai-responses") from exc
            raise

        raw_text = (response.output_text or "").strip()
        return parse_reasoning(raw_text)


def parse_reasoning(raw_text: str) -> Reasoning:
    payload = _extract_json(raw_text)
    if payload is None:
        raise MalformedResponseError("Reasoner reply is not a JSON object", raw=raw_text[:500])

    summary = payload.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise MalformedResponseError("Reasoner reply has no summary", raw=raw_text[:500])

    confidence = _to_float(payload.get("confidence"))
    if confidence is None:
        raise MalformedResponseError("Reasoner reply has no numeric confidence", raw=raw_text[:500])

    reasoning = payload.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        reasoning = MISSING_REASONING

    return Reasoning(summary=summary.strip(), confidence=_clamp(confidence, 0.0, 1.0), reasoning=reasoning.strip())


def _extract_json(text: str) -> Optional[dict]:
    if not text:
        return None

    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except json.JSONDecodeError:
        pass

    # Fenced or prose-wrapped replies.
    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        return None

    try:
        payload = json.loads(match.group(0))
        return payload if isinstance(payload, dict) else None
    except json.JSONDecodeError:
        return None


def _to_float(value: object) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
