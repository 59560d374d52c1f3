"""Argon2id password hashing for local comparison and the identity provider."""
from __future__ import annotations

import base64
import binascii
import hmac
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from argon2.exceptions import HashingError
from argon2.low_level import ARGON2_VERSION, Type, hash_secret_raw

_ALGORITHM = "argon2id"

# Upper bounds applied to parameters parsed from stored hashes so a tampered
# record cannot make verification allocate unbounded memory.
_MAX_TIME_COST = 32
_MAX_MEMORY_COST = 1024 * 1024
_MAX_PARALLELISM = 64
_MAX_HASH_LEN = 128


@dataclass(frozen=True)
class KdfParameters:
    """Argon2id cost settings. ``memory_cost`` is expressed in KiB."""

    time_cost: int = 1
    memory_cost: int = 64 * 1024
    parallelism: int = 4
    hash_len: int = 32
    salt_len: int = 16

    def __post_init__(self) -> None:
        if self.time_cost < 1:
            raise ValueError("time_cost must be at least 1")
        if self.parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        if self.memory_cost < 8 * self.parallelism:
            raise ValueError("memory_cost must be at least 8 KiB per lane")
        if self.hash_len < 4 or self.salt_len < 8:
            raise ValueError("hash_len must be >= 4 and salt_len >= 8")


INTERNAL_PARAMETERS = KdfParameters(time_cost=1)
PROVIDER_PARAMETERS = KdfParameters(time_cost=3)


class HashEncoding(str, Enum):
    """Supported output syntaxes for :meth:`CredentialIssuer.hash`."""

    INTERNAL = "internal"
    PROVIDER = "provider"


def _b64encode(data: bytes, *, padded: bool) -> str:
    text = base64.b64encode(data).decode("ascii")
    return text if padded else text.rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.b64decode(text + padding, validate=True)


def _derive(plaintext: str, salt: bytes, params: KdfParameters, hash_len: int) -> bytes:
    return hash_secret_raw(
        plaintext.encode("utf-8"),
        salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=hash_len,
        type=Type.ID,
        version=ARGON2_VERSION,
    )


def _parse(encoded: str) -> Optional[Tuple[KdfParameters, bytes, bytes]]:
    """Split an encoded hash into parameters, salt and key.

    Both syntaxes share the ``alg$v=..$m=..,t=..,p=..$salt$key`` layout; the
    identity-provider form carries a leading ``$`` and unpadded base64.
    """

    text = encoded.strip()
    if text.startswith("$"):
        text = text[1:]
    parts = text.split("$")
    if len(parts) != 5:
        return None
    algorithm, version_part, params_part, salt_part, key_part = parts
    if algorithm != _ALGORITHM or version_part != f"v={ARGON2_VERSION}":
        return None

    values = {}
    for item in params_part.split(","):
        name, sep, value = item.partition("=")
        if not sep:
            return None
        values[name] = int(value)
    if set(values) != {"m", "t", "p"}:
        return None

    salt = _b64decode(salt_part)
    key = _b64decode(key_part)
    if not (1 <= values["t"] <= _MAX_TIME_COST):
        return None
    if not (1 <= values["p"] <= _MAX_PARALLELISM):
        return None
    if not (8 * values["p"] <= values["m"] <= _MAX_MEMORY_COST):
        return None
    if not (4 <= len(key) <= _MAX_HASH_LEN) or len(salt) < 8:
        return None

    params = KdfParameters(
        time_cost=values["t"],
        memory_cost=values["m"],
        parallelism=values["p"],
        hash_len=len(key),
        salt_len=len(salt),
    )
    return params, salt, key


class CredentialIssuer:
    """Produce and check self-describing Argon2id password hashes.

    The internal encoding (``argon2id$v=19$m=65536,t=1,p=4$<salt>$<key>``,
    padded base64) is what user records store for comparisons. The provider
    encoding is the PHC string the identity provider reads from its user
    file (``$argon2id$v=19$m=65536,t=3,p=4$<salt>$<key>``). Both embed the
    parameters and salt, so verification never depends on configuration.
    """

    def __init__(
        self,
        *,
        internal: KdfParameters = INTERNAL_PARAMETERS,
        provider: KdfParameters = PROVIDER_PARAMETERS,
    ) -> None:
        self._internal = internal
        self._provider = provider

    @property
    def internal_parameters(self) -> KdfParameters:
        return self._internal

    @property
    def provider_parameters(self) -> KdfParameters:
        return self._provider

    def hash(self, plaintext: str, *, encoding: HashEncoding = HashEncoding.INTERNAL) -> str:
        if encoding is HashEncoding.PROVIDER:
            params, prefix, padded = self._provider, "$", False
        else:
            params, prefix, padded = self._internal, "", True

        salt = secrets.token_bytes(params.salt_len)
        key = _derive(plaintext, salt, params, params.hash_len)
        return (
            f"{prefix}{_ALGORITHM}$v={ARGON2_VERSION}"
            f"$m={params.memory_cost},t={params.time_cost},p={params.parallelism}"
            f"${_b64encode(salt, padded=padded)}${_b64encode(key, padded=padded)}"
        )

    def hash_for_provider(self, plaintext: str) -> str:
        return self.hash(plaintext, encoding=HashEncoding.PROVIDER)

    def verify(self, plaintext: str, encoded: str) -> bool:
        """Return ``True`` when ``plaintext`` matches ``encoded``; never raises."""

        if not isinstance(encoded, str) or not isinstance(plaintext, str):
            return False
        try:
            parsed = _parse(encoded)
        except (ValueError, binascii.Error):
            return False
        if parsed is None:
            return False

        params, salt, expected = parsed
        try:
            calculated = _derive(plaintext, salt, params, len(expected))
        except (HashingError, UnicodeEncodeError):
            return False
        return hmac.compare_digest(expected, calculated)


__all__ = [
    "CredentialIssuer",
    "HashEncoding",
    "INTERNAL_PARAMETERS",
    "KdfParameters",
    "PROVIDER_PARAMETERS",
]
