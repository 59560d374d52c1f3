"""Propagation of approved credentials into the identity provider's user file."""
from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Sequence

import yaml

from .errors import UpstreamUnavailable
from .records import atomic_write_text

logger = logging.getLogger("onboard.identity_provider")

DEFAULT_GROUPS = ("users",)
_RELOAD_TIMEOUT_SECONDS = 60


class CredentialPropagator(Protocol):
    """Narrow interface the registration workflow uses to publish credentials."""

    def propagate(self, email: str, display_name: str, encoded_hash: str) -> None:
        ...

    def remove(self, email: str, display_name: str) -> None:
        ...


def provider_username(email: str, display_name: str) -> str:
    """Return the login name used as the key in the provider's user file."""

    for candidate in (display_name, email):
        if candidate and candidate.strip():
            return candidate.strip()
    raise ValueError("Either a display name or an email address is required")


def parse_reload_command(value: Optional[str]) -> Optional[Sequence[str]]:
    if value is None or not value.strip():
        return None
    return shlex.split(value)


def _owned_by(entry: Any, email: str) -> bool:
    if not isinstance(entry, dict):
        return False
    stored = str(entry.get("email") or "").strip().lower()
    return bool(stored) and stored == email.strip().lower()


class AutheliaUserFile:
    """Upserts users in an Authelia style ``users_database.yml`` and reloads it.

    The file layout is ``users: {<username>: {displayname, password, email,
    groups}}``. Writes go through an atomic rename; the optional reload command
    (for example ``docker restart authelia``) runs after every change.
    """

    def __init__(
        self,
        path: Path,
        *,
        reload_command: Optional[Sequence[str]] = None,
        groups: Sequence[str] = DEFAULT_GROUPS,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._path = path
        self._reload_command = list(reload_command) if reload_command else None
        self._groups = list(groups)
        self._runner = runner
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def propagate(self, email: str, display_name: str, encoded_hash: str) -> None:
        """Create or refresh the entry for ``email``.

        An entry stored under the same username for a different email address
        belongs to another account and is never overwritten.
        """

        username = provider_username(email, display_name)
        with self._lock:
            document = self._load()
            users: Dict[str, Any] = document.setdefault("users", {})
            existing = users.get(username)
            if existing is not None and not _owned_by(existing, email):
                raise UpstreamUnavailable(
                    f"Identity provider username {username!r} belongs to another account",
                    detail="choose a different username",
                )
            groups = existing.get("groups") if existing is not None else None
            users[username] = {
                "displayname": display_name or username,
                "password": encoded_hash,
                "email": email,
                "groups": list(groups or self._groups),
            }
            self._write(document)
        logger.info("Updated identity provider entry for %s", username)
        self.reload()

    def remove(self, email: str, display_name: str) -> None:
        username = provider_username(email, display_name)
        with self._lock:
            document = self._load()
            users = document.get("users") or {}
            if username not in users:
                return
            if not _owned_by(users[username], email):
                logger.warning(
                    "Not removing identity provider entry %s: it belongs to another account",
                    username,
                )
                return
            del users[username]
            document["users"] = users
            self._write(document)
        logger.info("Removed identity provider entry for %s", username)
        self.reload()

    def reload(self) -> None:
        """Signal the identity provider to re-read its user database."""

        if not self._reload_command:
            return
        try:
            result = self._runner(
                self._reload_command,
                capture_output=True,
                text=True,
                check=False,
                timeout=_RELOAD_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise UpstreamUnavailable(f"Identity provider reload failed: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise UpstreamUnavailable(
                f"Identity provider reload exited with status {result.returncode}",
                detail=detail or None,
            )

    def _load(self) -> Dict[str, Any]:
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except FileNotFoundError:
            return {"users": {}}
        except (OSError, yaml.YAMLError) as exc:
            raise UpstreamUnavailable(f"Failed to read identity provider users file: {exc}") from exc
        if not isinstance(raw, dict):
            raise UpstreamUnavailable("Identity provider users file must contain a mapping")
        if not isinstance(raw.get("users"), dict):
            raw["users"] = {}
        return raw

    def _write(self, document: Dict[str, Any]) -> None:
        text = yaml.safe_dump(document, default_flow_style=False, sort_keys=True, allow_unicode=True)
        try:
            atomic_write_text(self._path, text)
        except OSError as exc:
            raise UpstreamUnavailable(f"Failed to write identity provider users file: {exc}") from exc


__all__ = [
    "AutheliaUserFile",
    "CredentialPropagator",
    "DEFAULT_GROUPS",
    "parse_reload_command",
    "provider_username",
]
