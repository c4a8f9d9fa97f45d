from __future__ import annotations

import unittest

from eth_utils import keccak

from truthmesh.errors import ConfigurationError
from truthmesh.oracle.signer import (
    SCALE,
    OracleSigner,
    eth_signed_message_hash,
    message_hash,
    recover_signer,
    to_scaled,
)

# Well-known local development key; never funded on a real network.
TEST_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


class ScalingTests(unittest.TestCase):
    def test_scale_constant(self) -> None:
        self.assertEqual(SCALE, 1_000_000)

    def test_to_scaled(self) -> None:
        self.assertEqual(to_scaled(0.0), 0)
        self.assertEqual(to_scaled(0.75), 750_000)
        self.assertEqual(to_scaled(0.82), 820_000)
        self.assertEqual(to_scaled(1.0), 1_000_000)
        self.assertEqual(to_scaled(0.9999), 999_900)

    def test_rounds_to_nearest_unit(self) -> None:
        self.assertEqual(to_scaled(0.0000006), 1)
        self.assertEqual(to_scaled(0.0000004), 0)
        self.assertEqual(to_scaled(0.1234567), 123_457)

    def test_out_of_range_rejected(self) -> None:
        for value in (-0.01, 1.01, float("nan"), float("inf")):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    to_scaled(value)


class MessageHashTests(unittest.TestCase):
    def test_matches_packed_uint256_words(self) -> None:
        packed = b"".join(v.to_bytes(32, "big") for v in (999, 750_000, 820_000))
        self.assertEqual(message_hash(999, 750_000, 820_000), keccak(packed))

    def test_rejects_values_outside_uint256(self) -> None:
        for args in ((-1, 0, 0), (0, 2**256, 0), (0, 0, 0.5), (True, 0, 0)):
            with self.subTest(args=args):
                with self.assertRaises(ValueError):
                    message_hash(*args)

    def test_prefix_applied_once(self) -> None:
        digest = message_hash(1, 2, 3)
        expected = keccak(b"\x19Ethereum Signed Message:\n32" + digest)
        self.assertEqual(eth_signed_message_hash(digest), expected)


class OracleSignerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.signer = OracleSigner(TEST_KEY)

    def test_address_from_key(self) -> None:
        self.assertEqual(self.signer.address, TEST_ADDRESS)

    def test_preflight_signature_recovers_to_signer(self) -> None:
        signed = self.signer.sign(999, 750_000, 820_000)

        self.assertEqual(signed.signer_address, TEST_ADDRESS)
        self.assertEqual(signed.message_hash, "0x" + message_hash(999, 750_000, 820_000).hex())
        self.assertEqual(len(bytes.fromhex(signed.signature[2:])), 65)

        digest = bytes.fromhex(signed.message_hash[2:])
        self.assertEqual(recover_signer(digest, signed.signature), TEST_ADDRESS)
        self.assertEqual(
            signed.eth_signed_message_hash,
            "0x" + keccak(b"\x19Ethereum Signed Message:\n32" + digest).hex(),
        )

    def test_signature_is_deterministic(self) -> None:
        self.assertEqual(self.signer.sign(1, 2, 3).signature, self.signer.sign(1, 2, 3).signature)

    def test_tampered_values_do_not_recover_to_signer(self) -> None:
        signed = self.signer.sign(999, 750_000, 820_000)
        other_digest = message_hash(999, 750_001, 820_000)
        self.assertNotEqual(recover_signer(other_digest, signed.signature), TEST_ADDRESS)

    def test_sign_values_scales_floats(self) -> None:
        signed = self.signer.sign_values(42, 0.75, 0.82)
        self.assertEqual((signed.id, signed.prediction, signed.confidence), (42, 750_000, 820_000))

    def test_missing_or_invalid_key(self) -> None:
        for key in ("", "   ", "0x1234", "not-a-key"):
            with self.subTest(key=key):
                with self.assertRaises(ConfigurationError):
                    OracleSigner(key)


if __name__ == "__main__":
    unittest.main()
