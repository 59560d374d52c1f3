"""Symmetric sealing of secrets that must survive on disk for a short while."""
from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


def derive_fernet(secret: str, purpose: str) -> Fernet:
    """Return a Fernet cipher bound to ``secret`` and a usage label."""

    if not secret:
        raise ValueError(
            "A secret key is required. Set ONBOARD_SECRET_KEY to enable credential sealing."
        )
    digest = hashlib.sha256(f"{purpose}:{secret}".encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


class CredentialSealer:
    """Encrypts submitted passwords while a registration awaits approval."""

    def __init__(self, secret: str) -> None:
        self._cipher = derive_fernet(secret, "pending-credential")

    def seal(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def open(self, sealed: str) -> str:
        try:
            plaintext = self._cipher.decrypt(sealed.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise ValueError(
                "Stored credential could not be decrypted. Was the secret key rotated?"
            ) from exc
        return plaintext.decode("utf-8")


__all__ = ["CredentialSealer", "derive_fernet"]
