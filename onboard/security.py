"""Operator authentication for the administrative routes."""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Iterable, Optional, Tuple

from fastapi import HTTPException, Request, status

logger = logging.getLogger("onboard.security")

_REALM = "onboard-operator"


def _digest(token: str) -> bytes:
    return hashlib.sha256(token.encode("utf-8")).digest()


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class OperatorAuth:
    """FastAPI dependency that admits requests carrying a configured operator token.

    Only SHA-256 digests of the tokens are kept. Every configured digest is
    compared on each request, so the timing does not reveal which token (if
    any) matched. With no tokens configured the operator routes stay closed.
    """

    def __init__(self, tokens: Iterable[str]) -> None:
        self._digests: Tuple[bytes, ...] = tuple(
            _digest(token.strip()) for token in tokens if token and token.strip()
        )
        if not self._digests:
            logger.warning("No operator tokens configured; operator endpoints are disabled")

    @property
    def enabled(self) -> bool:
        return bool(self._digests)

    def matches(self, token: str) -> bool:
        candidate = _digest(token)
        matched = False
        for digest in self._digests:
            matched |= hmac.compare_digest(candidate, digest)
        return matched

    async def __call__(self, request: Request) -> None:
        token = _bearer_token(request)
        if token is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token",
                headers={"WWW-Authenticate": f'Bearer realm="{_REALM}"'},
            )
        if not self.matches(token):
            client = request.client.host if request.client else "unknown"
            logger.warning("Rejected operator token for %s %s from %s", request.method, request.url.path, client)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid operator token",
            )


__all__ = ["OperatorAuth"]
