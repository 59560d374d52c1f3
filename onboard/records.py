"""Crash-safe JSON persistence for named record collections."""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import PersistenceError

logger = logging.getLogger("onboard.records")

Record = Dict[str, Any]

PENDING_COLLECTION = "pending"
INVITE_COLLECTION = "invites"
USER_COLLECTION = "users"
CHALLENGE_COLLECTION = "captcha_store"


def resolve_data_dir(env_value: Optional[str]) -> Path:
    """Resolve the directory holding the JSON collections."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "data").resolve(strict=False)


def _atomic_tmp_path(path: Path) -> Path:
    return path.with_suffix(path.suffix + f".{uuid.uuid4().hex}.tmp")


def atomic_write_text(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` so readers only ever see whole files.

    The data is written to a sibling temporary file, fsynced, then renamed over
    the target. ``OSError`` propagates to the caller.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _atomic_tmp_path(path)
    try:
        fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, text.encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        tmp.replace(path)
        _fsync_directory(path.parent)
    finally:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            logger.debug("Failed to clean up temp file %s", tmp)


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:  # pragma: no cover - platforms without directory handles
        return
    try:
        os.fsync(fd)
    except OSError:  # pragma: no cover - not supported on every filesystem
        pass
    finally:
        os.close(fd)


class RecordStore:
    """Load and replace whole JSON collections stored under one directory.

    The store performs no locking of its own. Callers that read, modify and
    save a collection must hold the matching lock from :class:`CollectionLocks`.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, name: str) -> Path:
        cleaned = name.strip()
        if not cleaned or "/" in cleaned or "\\" in cleaned or cleaned.startswith("."):
            raise ValueError(f"Invalid collection name {name!r}")
        return self._directory / f"{cleaned}.json"

    def load(self, name: str) -> List[Record]:
        """Return the records of ``name``; a collection never saved is empty."""

        path = self.path_for(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise PersistenceError(f"Failed to read collection {name!r}: {exc}") from exc

        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Collection {name!r} is not valid JSON: {exc}") from exc
        if not isinstance(data, list):
            raise PersistenceError(f"Collection {name!r} must contain a JSON array")
        return [dict(item) for item in data if isinstance(item, dict)]

    def save(self, name: str, records: Sequence[Record]) -> None:
        """Atomically replace the collection ``name`` with ``records``."""

        path = self.path_for(name)
        payload = json.dumps(list(records), ensure_ascii=False, indent=2)
        try:
            atomic_write_text(path, payload + "\n")
        except OSError as exc:
            raise PersistenceError(f"Failed to write collection {name!r}: {exc}") from exc

    def ensure(self, *names: str) -> None:
        """Create empty files for collections that do not exist yet."""

        for name in names:
            if not self.path_for(name).exists():
                self.save(name, [])


class CollectionLocks:
    """One mutex per collection name, shared by every component of a process."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    @contextmanager
    def hold(self, *names: str) -> Iterator[None]:
        """Acquire the locks for ``names`` in a stable order."""

        ordered = sorted(set(names))
        acquired: List[threading.Lock] = []
        try:
            for name in ordered:
                lock = self.get(name)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


__all__ = [
    "CHALLENGE_COLLECTION",
    "CollectionLocks",
    "INVITE_COLLECTION",
    "PENDING_COLLECTION",
    "Record",
    "RecordStore",
    "USER_COLLECTION",
    "atomic_write_text",
    "resolve_data_dir",
]
