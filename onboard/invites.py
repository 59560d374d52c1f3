"""Single-use invite tokens that gate registration."""
from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from .models import Invite, utcnow
from .records import INVITE_COLLECTION, CollectionLocks, Record, RecordStore

logger = logging.getLogger("onboard.invites")

DEFAULT_INVITE_TTL_HOURS = 72
_TOKEN_BYTES = 24


class InviteResult(str, Enum):
    """Outcome of :meth:`InviteTokenManager.consume`."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    EMAIL_MISMATCH = "email_mismatch"


def _normalise_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def _find(records: List[Record], token: str) -> Optional[int]:
    for index, item in enumerate(records):
        stored = str(item.get("token", ""))
        if stored and hmac.compare_digest(stored, token):
            return index
    return None


class InviteTokenManager:
    """Issue, consume and revoke invites stored in the ``invites`` collection."""

    def __init__(
        self,
        records: RecordStore,
        locks: CollectionLocks,
        *,
        default_ttl_hours: int = DEFAULT_INVITE_TTL_HOURS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if default_ttl_hours <= 0:
            raise ValueError("default_ttl_hours must be positive")
        self._records = records
        self._locks = locks
        self._default_ttl_hours = default_ttl_hours
        self._clock = clock

    def issue(self, bound_email: Optional[str] = None, ttl_hours: Optional[int] = None) -> Invite:
        """Create an invite. The returned record is the only place the token is shown."""

        hours = ttl_hours if ttl_hours and ttl_hours > 0 else self._default_ttl_hours
        now = self._clock()
        invite = Invite(
            token=secrets.token_urlsafe(_TOKEN_BYTES),
            email=_normalise_email(bound_email),
            created_at=now,
            expires_at=now + timedelta(hours=hours),
        )
        with self._locks.hold(INVITE_COLLECTION):
            records = self._records.load(INVITE_COLLECTION)
            records.append(invite.to_record())
            self._records.save(INVITE_COLLECTION, records)

        logger.info(
            "Issued invite expiring at %s (bound to email: %s)",
            invite.expires_at.isoformat(),
            bool(invite.email),
        )
        return invite

    def consume(self, token: str, *, email: Optional[str] = None) -> InviteResult:
        """Mark ``token`` as used if it may still authorise a registration.

        When the invite is bound to an address and ``email`` is given, the two
        must match; a mismatch leaves the invite untouched.
        """

        cleaned = token.strip()
        if not cleaned:
            return InviteResult.NOT_FOUND

        with self._locks.hold(INVITE_COLLECTION):
            records = self._records.load(INVITE_COLLECTION)
            index = _find(records, cleaned)
            if index is None:
                return InviteResult.NOT_FOUND
            invite = Invite.from_record(records[index])
            now = self._clock()
            result = self._evaluate(invite, email, now)
            if result is not InviteResult.SUCCESS:
                return result

            records[index] = Invite(
                token=invite.token,
                email=invite.email,
                created_at=invite.created_at,
                expires_at=invite.expires_at,
                used=True,
                used_at=now,
            ).to_record()
            self._records.save(INVITE_COLLECTION, records)

        logger.info("Invite consumed")
        return InviteResult.SUCCESS

    def check(self, token: str, *, email: Optional[str] = None) -> InviteResult:
        """Report what :meth:`consume` would return, without marking the invite."""

        invite = self.get(token) if token.strip() else None
        if invite is None:
            return InviteResult.NOT_FOUND
        return self._evaluate(invite, email, self._clock())

    @staticmethod
    def _evaluate(invite: Invite, email: Optional[str], now: datetime) -> InviteResult:
        if invite.used:
            return InviteResult.ALREADY_USED
        if invite.is_expired(now):
            return InviteResult.EXPIRED
        if invite.email and email is not None and invite.email != _normalise_email(email):
            return InviteResult.EMAIL_MISMATCH
        return InviteResult.SUCCESS

    def revoke(self, token: str) -> bool:
        """Remove ``token`` whatever its state. Returns ``False`` if it was absent."""

        with self._locks.hold(INVITE_COLLECTION):
            records = self._records.load(INVITE_COLLECTION)
            index = _find(records, token.strip())
            if index is None:
                return False
            del records[index]
            self._records.save(INVITE_COLLECTION, records)

        logger.info("Invite revoked")
        return True

    def get(self, token: str) -> Optional[Invite]:
        with self._locks.hold(INVITE_COLLECTION):
            records = self._records.load(INVITE_COLLECTION)
        index = _find(records, token.strip())
        if index is None:
            return None
        return Invite.from_record(records[index])

    def list(self) -> List[Invite]:
        with self._locks.hold(INVITE_COLLECTION):
            records = self._records.load(INVITE_COLLECTION)
        return [Invite.from_record(item) for item in records]


__all__ = ["DEFAULT_INVITE_TTL_HOURS", "InviteResult", "InviteTokenManager"]
