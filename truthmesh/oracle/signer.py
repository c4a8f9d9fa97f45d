"""Oracle signing protocol shared with the on-chain verifier.

message_hash          = keccak256(uint256 id || uint256 prediction || uint256 confidence)
eth_signed_message    = keccak256("\\x19Ethereum Signed Message:\\n32" || message_hash)
signature             = secp256k1 recoverable signature (r || s || v, 65 bytes) over eth_signed_message

The prefix is applied exactly once, over the raw 32-byte message hash. This is
what the verifier's getEthSignedMessageHash(getMessageHash(...)) followed by
ecrecover reproduces. Floats in [0, 1] are scaled by SCALE before hashing; SCALE
is part of the protocol and changes only together with the verifier.
"""
from __future__ import annotations

import logging
import math
from typing import Union

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from truthmesh.errors import ConfigurationError
from truthmesh.models import SignedPrediction

logger = logging.getLogger(__name__)

SCALE = 1_000_000
UINT256_MAX = 2**256 - 1
_EIP191_PREFIX = b"\x19Ethereum Signed Message:\n32"


def to_scaled(value: float) -> int:
    """Scale a [0, 1] float to the protocol integer, rounding half up."""
    if not math.isfinite(value) or value < 0.0 or value > 1.0:
        raise ValueError(f"Value must be within [0, 1], got {value}")
    return int(math.floor(value * SCALE + 0.5))


def message_hash(prediction_id: int, prediction: int, confidence: int) -> bytes:
    for name, value in (("id", prediction_id), ("prediction", prediction), ("confidence", confidence)):
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= UINT256_MAX:
            raise ValueError(f"{name} must be a uint256 integer, got {value!r}")
    # Three uint256 words: abi.encode and abi.encodePacked agree byte for byte.
    return keccak(encode(["uint256", "uint256", "uint256"], [prediction_id, prediction, confidence]))


def eth_signed_message_hash(digest: bytes) -> bytes:
    if len(digest) != 32:
        raise ValueError("message hash must be 32 bytes")
    return keccak(_EIP191_PREFIX + digest)


def recover_signer(digest: bytes, signature: Union[str, bytes]) -> str:
    return Account.recover_message(encode_defunct(primitive=digest), signature=signature)


class OracleSigner:
    def __init__(self, private_key: str):
        if not private_key or not private_key.strip():
            raise ConfigurationError("ORACLE_PRIVATE_KEY is required for signing")
        try:
            self._account = Account.from_key(private_key.strip())
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("ORACLE_PRIVATE_KEY is not a valid secp256k1 key") from exc

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, prediction_id: int, prediction: int, confidence: int) -> SignedPrediction:
        digest = message_hash(prediction_id, prediction, confidence)
        signed = self._account.sign_message(encode_defunct(primitive=digest))

        result = SignedPrediction(
            id=prediction_id,
            prediction=prediction,
            confidence=confidence,
            signature="0x" + bytes(signed.signature).hex(),
            signer_address=self._account.address,
            message_hash="0x" + digest.hex(),
            eth_signed_message_hash="0x" + eth_signed_message_hash(digest).hex(),
        )
        logger.debug(
            "Signed prediction",
            extra={"prediction_id": prediction_id, "message_hash": result.message_hash, "signer": result.signer_address},
        )
        return result

    def sign_values(self, prediction_id: int, prediction_value: float, confidence: float) -> SignedPrediction:
        return self.sign(prediction_id, to_scaled(prediction_value), to_scaled(confidence))
