"""Tests for the Argon2id credential encodings."""

from __future__ import annotations

import base64
import sys
import unittest
from pathlib import Path

from argon2 import PasswordHasher

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from onboard.credentials import CredentialIssuer, HashEncoding, KdfParameters

FAST = KdfParameters(time_cost=1, memory_cost=1024, parallelism=1)


def _flip_first_bit(segment: str) -> str:
    padding = "=" * (-len(segment) % 4)
    raw = bytearray(base64.b64decode(segment + padding))
    raw[0] ^= 0x01
    encoded = base64.b64encode(bytes(raw)).decode("ascii")
    return encoded if segment.endswith("=") else encoded.rstrip("=")


class CredentialIssuerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.issuer = CredentialIssuer(internal=FAST, provider=FAST)

    def test_internal_encoding_layout(self) -> None:
        encoded = self.issuer.hash("correct horse battery")

        self.assertTrue(encoded.startswith("argon2id$v=19$m=1024,t=1,p=1$"))
        _, _, _, salt, key = encoded.split("$")
        self.assertEqual(len(base64.b64decode(salt)), 16)
        self.assertEqual(len(base64.b64decode(key)), 32)
        self.assertTrue(self.issuer.verify("correct horse battery", encoded))
        self.assertFalse(self.issuer.verify("correct horse battery!", encoded))

    def test_provider_encoding_is_unpadded_phc(self) -> None:
        encoded = self.issuer.hash_for_provider("correct horse battery")

        self.assertTrue(encoded.startswith("$argon2id$v=19$m=1024,t=1,p=1$"))
        salt, key = encoded.split("$")[-2:]
        self.assertNotIn("=", salt)
        self.assertNotIn("=", key)
        self.assertTrue(self.issuer.verify("correct horse battery", encoded))

    def test_hash_uses_fresh_salt(self) -> None:
        first = self.issuer.hash("same password")
        second = self.issuer.hash("same password")

        self.assertNotEqual(first, second)
        self.assertTrue(self.issuer.verify("same password", first))
        self.assertTrue(self.issuer.verify("same password", second))

    def test_bit_flips_are_rejected(self) -> None:
        for encoding in HashEncoding:
            encoded = self.issuer.hash("tamper me", encoding=encoding)
            parts = encoded.split("$")

            flipped_key = parts[:-1] + [_flip_first_bit(parts[-1])]
            flipped_salt = parts[:-2] + [_flip_first_bit(parts[-2]), parts[-1]]

            self.assertFalse(self.issuer.verify("tamper me", "$".join(flipped_key)))
            self.assertFalse(self.issuer.verify("tamper me", "$".join(flipped_salt)))

    def test_verification_reads_parameters_from_the_hash(self) -> None:
        stronger = CredentialIssuer(
            internal=KdfParameters(time_cost=2, memory_cost=2048, parallelism=2),
            provider=FAST,
        )
        encoded = stronger.hash("portable")

        self.assertTrue(self.issuer.verify("portable", encoded))

    def test_malformed_hashes_never_raise(self) -> None:
        candidates = [
            "",
            "garbage",
            "argon2id$v=19$m=x,t=1,p=1$c2FsdHNhbHQ=$a2V5a2V5",
            "argon2i$v=19$m=1024,t=1,p=1$c2FsdHNhbHQ=$a2V5a2V5",
            "argon2id$v=16$m=1024,t=1,p=1$c2FsdHNhbHQ=$a2V5a2V5",
            "argon2id$v=19$m=1024,t=1$c2FsdHNhbHQ=$a2V5a2V5",
            "argon2id$v=19$m=1024,t=1,p=1$!!!!$a2V5a2V5",
            "argon2id$v=19$m=99999999,t=1,p=1$c2FsdHNhbHQ=$a2V5a2V5",
            "argon2id$v=19$m=1024,t=1000,p=1$c2FsdHNhbHQ=$a2V5a2V5",
        ]
        for candidate in candidates:
            with self.subTest(candidate=candidate):
                self.assertFalse(self.issuer.verify("anything", candidate))

    def test_provider_hash_is_accepted_by_argon2_cffi(self) -> None:
        encoded = self.issuer.hash_for_provider("interoperable")

        self.assertTrue(PasswordHasher().verify(encoded, "interoperable"))

    def test_argon2_cffi_hashes_verify(self) -> None:
        hasher = PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)
        encoded = hasher.hash("interoperable")

        self.assertTrue(self.issuer.verify("interoperable", encoded))
        self.assertFalse(self.issuer.verify("other", encoded))

    def test_parameter_validation(self) -> None:
        with self.assertRaises(ValueError):
            KdfParameters(time_cost=0)
        with self.assertRaises(ValueError):
            KdfParameters(memory_cost=16, parallelism=4)
        with self.assertRaises(ValueError):
            KdfParameters(salt_len=4)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
