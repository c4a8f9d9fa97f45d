from __future__ import annotations

from typing import Optional


class TruthMeshError(Exception):
    """Base exception for the signal/prediction pipeline."""


class ConfigurationError(TruthMeshError):
    """A required setting is missing or invalid. Fatal at startup."""

    pass


class TransientServiceError(TruthMeshError):
    """An external capability timed out, rate limited, or was unreachable."""

    def __init__(self, message: str, service: str = ""):
        super().__init__(message)
        self.service = service


class MalformedResponseError(TruthMeshError):
    """An external reply could not be parsed into the expected structure."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class SubmissionError(TruthMeshError):
    """On-chain submission failed or was not confirmed. Safe to retry."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class SignatureRejectedError(TruthMeshError):
    """The verifier rejected the oracle signature. Not retried automatically."""

    pass
