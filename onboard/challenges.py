"""Arithmetic human-verification challenges and the receipts proving them."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Union

from cryptography.fernet import InvalidToken

from .errors import PersistenceError, VerificationError
from .models import ChallengeEntry, utcnow
from .records import CHALLENGE_COLLECTION, RecordStore
from .sealing import derive_fernet

logger = logging.getLogger("onboard.challenges")

DEFAULT_CHALLENGE_TTL = timedelta(minutes=2)
DEFAULT_REAPER_INTERVAL = timedelta(minutes=1)
DEFAULT_RECEIPT_TTL = timedelta(minutes=10)

_CHALLENGE_ID_BYTES = 8
_MIN_OPERAND = 1
_MAX_OPERAND = 9

Clock = Callable[[], datetime]


class ChallengeResult(str, Enum):
    """Outcome of a challenge verification attempt."""

    SUCCESS = "success"
    UNKNOWN = "unknown"
    EXPIRED = "expired"
    INVALID = "invalid"


def hash_answer(answer: Union[int, str]) -> bytes:
    """Return the SHA-256 digest of an answer in canonical decimal form."""

    text = str(answer).strip()
    try:
        text = str(int(text))
    except ValueError:
        pass
    return hashlib.sha256(text.encode("utf-8")).digest()


def _draw_operand() -> int:
    return secrets.randbelow(_MAX_OPERAND - _MIN_OPERAND + 1) + _MIN_OPERAND


class ChallengeStore:
    """Thread-safe map of outstanding challenges with TTL expiry.

    Entries are consumed on the first correct answer. Wrong answers leave the
    entry in place until it expires. A background reaper drops expired entries
    and snapshots the survivors through :class:`RecordStore`; the reaper is
    housekeeping only, :meth:`verify` enforces expiry by itself.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = DEFAULT_CHALLENGE_TTL,
        records: Optional[RecordStore] = None,
        reaper_interval: timedelta = DEFAULT_REAPER_INTERVAL,
        clock: Clock = utcnow,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("Challenge TTL must be positive")
        if reaper_interval <= timedelta(0):
            raise ValueError("Reaper interval must be positive")
        self._ttl = ttl
        self._records = records
        self._reaper_interval = reaper_interval
        self._clock = clock
        self._entries: Dict[str, ChallengeEntry] = {}
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._reaper: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def reaper_running(self) -> bool:
        return self._reaper is not None and self._reaper.is_alive()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, challenge_id: object) -> bool:
        with self._lock:
            return challenge_id in self._entries

    # ------------------------------------------------------------------
    # Challenge lifecycle
    # ------------------------------------------------------------------
    def issue(self) -> Tuple[str, str]:
        """Create a challenge and return its id with the question text.

        New entries reach storage with the next reaper cycle or :meth:`stop`.
        """

        first = _draw_operand()
        second = _draw_operand()
        challenge_id = secrets.token_urlsafe(_CHALLENGE_ID_BYTES)
        entry = ChallengeEntry(
            id=challenge_id,
            answer_hash=hash_answer(first + second),
            expires_at=self._clock() + self._ttl,
        )
        with self._lock:
            self._entries[challenge_id] = entry
        return challenge_id, f"{first} + {second}"

    def verify(self, challenge_id: str, answer: Union[int, str]) -> ChallengeResult:
        """Check ``answer`` against the stored hash, consuming the entry on success."""

        candidate = hash_answer(answer)
        with self._lock:
            entry = self._entries.get(challenge_id)
            if entry is None:
                return ChallengeResult.UNKNOWN
            if entry.is_expired(self._clock()):
                del self._entries[challenge_id]
                result = ChallengeResult.EXPIRED
            elif hmac.compare_digest(candidate, entry.answer_hash):
                del self._entries[challenge_id]
                result = ChallengeResult.SUCCESS
            else:
                return ChallengeResult.INVALID
        self._persist_quietly()
        return result

    def discard(self, challenge_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(challenge_id, None) is not None
        if removed:
            self._persist_quietly()
        return removed

    def reap(self) -> int:
        """Drop expired entries, persist the rest, and return how many were dropped."""

        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._entries.pop(key, None)
        if expired:
            logger.debug("Reaped %d expired challenge(s)", len(expired))
        self._persist_quietly()
        return len(expired)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> int:
        """Restore the snapshot, skipping entries that have already expired."""

        if self._records is None:
            return 0
        now = self._clock()
        restored: Dict[str, ChallengeEntry] = {}
        for item in self._records.load(CHALLENGE_COLLECTION):
            try:
                entry = ChallengeEntry.from_record(item)
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring malformed challenge snapshot entry")
                continue
            if entry.is_expired(now):
                continue
            restored[entry.id] = entry
        with self._lock:
            self._entries.update(restored)
        return len(restored)

    def snapshot(self) -> None:
        """Write the unexpired entries to storage. Raises :class:`PersistenceError`."""

        if self._records is None:
            return
        with self._persist_lock:
            now = self._clock()
            with self._lock:
                payload = [
                    entry.to_record()
                    for entry in self._entries.values()
                    if not entry.is_expired(now)
                ]
            self._records.save(CHALLENGE_COLLECTION, payload)

    def _persist_quietly(self) -> None:
        try:
            self.snapshot()
        except PersistenceError as exc:
            logger.warning("Challenge snapshot failed, retrying on the next cycle: %s", exc)

    # ------------------------------------------------------------------
    # Reaper lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the background reaper if it is not already running."""

        if self.reaper_running:
            return
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run_reaper,
            args=(stop_event,),
            name="challenge-reaper",
            daemon=True,
        )
        self._stop_event = stop_event
        self._reaper = thread
        thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel the reaper and write a final snapshot."""

        if self._stop_event is not None:
            self._stop_event.set()
        if self._reaper is not None:
            self._reaper.join(timeout)
        self._reaper = None
        self._stop_event = None
        self._persist_quietly()

    def _run_reaper(self, stop_event: threading.Event) -> None:
        interval = self._reaper_interval.total_seconds()
        while not stop_event.wait(interval):
            try:
                self.reap()
            except Exception:  # pragma: no cover - keep the reaper alive
                logger.exception("Challenge reaper cycle failed")


class ReceiptIssuer:
    """Issues short-lived, single-use proofs that a challenge was solved."""

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = DEFAULT_RECEIPT_TTL,
        clock: Clock = utcnow,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("Receipt TTL must be positive")
        self._cipher = derive_fernet(secret, "challenge-receipt")
        self._ttl = ttl
        self._clock = clock
        self._redeemed: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def issue(self) -> str:
        payload = json.dumps({"rid": secrets.token_hex(16)}).encode("utf-8")
        now = int(self._clock().timestamp())
        return self._cipher.encrypt_at_time(payload, now).decode("ascii")

    def redeem(self, receipt: str) -> None:
        """Accept ``receipt`` once; raise :class:`VerificationError` otherwise."""

        now = self._clock()
        try:
            raw = self._cipher.decrypt_at_time(
                receipt.encode("ascii"),
                int(self._ttl.total_seconds()),
                int(now.timestamp()),
            )
            receipt_id = str(json.loads(raw)["rid"])
        except (InvalidToken, UnicodeEncodeError, ValueError, KeyError, TypeError) as exc:
            raise VerificationError(
                "Verification receipt is invalid or has expired",
                reason="invalid_receipt",
            ) from exc

        with self._lock:
            self._prune_locked(now)
            if receipt_id in self._redeemed:
                raise VerificationError(
                    "Verification receipt has already been used",
                    reason="already_used",
                )
            self._redeemed[receipt_id] = now + self._ttl

    def _prune_locked(self, now: datetime) -> None:
        stale = [key for key, expires_at in self._redeemed.items() if expires_at < now]
        for key in stale:
            self._redeemed.pop(key, None)


__all__ = [
    "ChallengeResult",
    "ChallengeStore",
    "DEFAULT_CHALLENGE_TTL",
    "DEFAULT_REAPER_INTERVAL",
    "DEFAULT_RECEIPT_TTL",
    "ReceiptIssuer",
    "hash_answer",
]
