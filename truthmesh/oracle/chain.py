from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from truthmesh.errors import SignatureRejectedError, SubmissionError
from truthmesh.models import Market, MarketState, SignedPrediction
from truthmesh.oracle.signer import OracleSigner, message_hash
from truthmesh.storage.mongo import MongoStore

logger = logging.getLogger(__name__)

PREFLIGHT_ID = 999
PREFLIGHT_PREDICTION = 750_000
PREFLIGHT_CONFIDENCE = 820_000

# Index order matches the market contract's state enum.
MARKET_STATES = (
    MarketState.OPEN,
    MarketState.CLOSED,
    MarketState.PROVISIONAL,
    MarketState.DISPUTED,
    MarketState.FINALIZED,
    MarketState.CANCELLED,
)

_SIGNATURE_REVERT_MARKERS = ("signer", "signature")

PREDICTION_ORACLE_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "oracleSigner",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "getMessageHash",
        "stateMutability": "pure",
        "inputs": [
            {"name": "id", "type": "uint256"},
            {"name": "prediction", "type": "uint256"},
            {"name": "confidence", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
    {
        "type": "function",
        "name": "getEthSignedMessageHash",
        "stateMutability": "pure",
        "inputs": [{"name": "messageHash", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
    {
        "type": "function",
        "name": "submitPrediction",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "id", "type": "uint256"},
            {"name": "prediction", "type": "uint256"},
            {"name": "confidence", "type": "uint256"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    },
]

PREDICTION_MARKET_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "nextMarketId",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "markets",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [
            {"name": "id", "type": "uint256"},
            {"name": "question", "type": "string"},
            {"name": "lockTimestamp", "type": "uint256"},
            {"name": "resolveTimestamp", "type": "uint256"},
            {"name": "state", "type": "uint8"},
            {"name": "provisionalOutcome", "type": "uint8"},
            {"name": "finalOutcome", "type": "uint8"},
            {"name": "totalYes", "type": "uint256"},
            {"name": "totalNo", "type": "uint256"},
            {"name": "disputeDeadline", "type": "uint256"},
            {"name": "disputeStaker", "type": "address"},
            {"name": "disputeBondAmount", "type": "uint256"},
        ],
    },
]


def connect(rpc_url: str) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url))


class OracleContract:
    """Verifier contract: hash helpers, signer lookup and confirmed submission."""

    def __init__(self, w3: Web3, address: str, sender_private_key: str, receipt_timeout_seconds: int = 120):
        self.w3 = w3
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=PREDICTION_ORACLE_ABI)
        self._sender = Account.from_key(sender_private_key)
        self.receipt_timeout_seconds = receipt_timeout_seconds

    def oracle_signer(self) -> str:
        return self.contract.functions.oracleSigner().call()

    def get_message_hash(self, prediction_id: int, prediction: int, confidence: int) -> bytes:
        return bytes(self.contract.functions.getMessageHash(prediction_id, prediction, confidence).call())

    def get_eth_signed_message_hash(self, digest: bytes) -> bytes:
        return bytes(self.contract.functions.getEthSignedMessageHash(digest).call())

    def submit_prediction(self, signed: SignedPrediction) -> str:
        """Send submitPrediction and return the transaction hash without waiting for inclusion."""
        fn = self.contract.functions.submitPrediction(
            signed.id, signed.prediction, signed.confidence, bytes.fromhex(signed.signature[2:])
        )
        sender = self._sender.address
        try:
            fn.call({"from": sender})
        except ContractLogicError as exc:
            reason = str(exc)
            if any(marker in reason.lower() for marker in _SIGNATURE_REVERT_MARKERS):
                raise SignatureRejectedError(f"Verifier rejected signature for prediction {signed.id}: {reason}") from exc
            raise SubmissionError(f"submitPrediction would revert: {reason}") from exc
        except (Web3Exception, OSError) as exc:
            raise SubmissionError(f"submitPrediction simulation failed: {exc}") from exc

        try:
            tx = fn.build_transaction(
                {
                    "from": sender,
                    "nonce": self.w3.eth.get_transaction_count(sender, "pending"),
                    "chainId": self.w3.eth.chain_id,
                }
            )
            raw = self._sender.sign_transaction(tx).raw_transaction
            tx_hash = self.w3.eth.send_raw_transaction(raw)
        except (Web3Exception, OSError, ValueError) as exc:
            raise SubmissionError(f"submitPrediction send failed: {exc}") from exc
        return "0x" + bytes(tx_hash).hex()

    def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout_seconds)
        except TimeExhausted as exc:
            raise SubmissionError(f"Transaction {tx_hash} not confirmed in time", tx_hash=tx_hash) from exc
        except (Web3Exception, OSError) as exc:
            raise SubmissionError(f"Receipt lookup failed for {tx_hash}: {exc}", tx_hash=tx_hash) from exc

        if receipt.get("status") != 1:
            # Final and failed: no tx_hash so the caller sends a fresh transaction next time.
            raise SubmissionError(f"Transaction {tx_hash} reverted")
        return dict(receipt)

    def preflight(self, signer: OracleSigner) -> Dict[str, Any]:
        """Compare local hashing and signer identity with the verifier for a fixed sample message."""
        local_hash = message_hash(PREFLIGHT_ID, PREFLIGHT_PREDICTION, PREFLIGHT_CONFIDENCE)
        remote_hash = self.get_message_hash(PREFLIGHT_ID, PREFLIGHT_PREDICTION, PREFLIGHT_CONFIDENCE)
        expected_signer = self.oracle_signer()
        signed = signer.sign(PREFLIGHT_ID, PREFLIGHT_PREDICTION, PREFLIGHT_CONFIDENCE)
        remote_eth_hash = self.get_eth_signed_message_hash(remote_hash)

        report = {
            "message_hash_matches": local_hash == remote_hash,
            "eth_signed_hash_matches": signed.eth_signed_message_hash == "0x" + remote_eth_hash.hex(),
            "signer_matches": expected_signer.lower() == signer.address.lower(),
            "local_signer": signer.address,
            "contract_signer": expected_signer,
        }
        if not all(report[k] for k in ("message_hash_matches", "eth_signed_hash_matches", "signer_matches")):
            logger.critical("Oracle preflight mismatch", extra=report)
        else:
            logger.info("Oracle preflight passed", extra={"signer": signer.address})
        return report


class MarketSync:
    """Projects the market contract's markets into the store."""

    def __init__(self, w3: Web3, address: str, store: MongoStore):
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=PREDICTION_MARKET_ABI)
        self.store = store

    def sync(self) -> List[Market]:
        next_id = int(self.contract.functions.nextMarketId().call())
        if next_id == 0:
            logger.info("No markets found in contract")
            return []

        synced: List[Market] = []
        for market_id in range(1, next_id):
            try:
                row = self.contract.functions.markets(market_id).call()
            except (Web3Exception, OSError) as exc:
                logger.warning("Market read failed", extra={"contract_market_id": market_id, "error": str(exc)})
                continue

            market = self._upsert(row)
            if market is not None:
                synced.append(market)

        logger.info("Market sync complete", extra={"synced": len(synced), "next_market_id": next_id})
        return synced

    def _upsert(self, row: Any) -> Optional[Market]:
        contract_id, question, lock_ts, resolve_ts, state_idx = row[0], row[1], row[2], row[3], row[4]
        if int(contract_id) == 0:
            return None
        if not 0 <= int(state_idx) < len(MARKET_STATES):
            logger.warning("Unknown market state", extra={"contract_market_id": contract_id, "state": state_idx})
            return None

        return self.store.upsert_market(
            contract_market_id=str(int(contract_id)),
            question=str(question),
            lock_timestamp=datetime.fromtimestamp(int(lock_ts), tz=timezone.utc),
            resolve_timestamp=datetime.fromtimestamp(int(resolve_ts), tz=timezone.utc) if int(resolve_ts) > 0 else None,
            state=MARKET_STATES[int(state_idx)],
        )
