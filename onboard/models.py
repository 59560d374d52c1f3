"""Domain records persisted by the onboarding core."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RegistrationStatus(str, Enum):
    PENDING = "pending"


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class ChallengeEntry:
    """Hashed answer and deadline of an arithmetic challenge."""

    id: str
    answer_hash: bytes
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "answer_hash": self.answer_hash.hex(),
            "expires_at": serialize_datetime(self.expires_at),
        }

    @staticmethod
    def from_record(data: Dict[str, Any]) -> "ChallengeEntry":
        return ChallengeEntry(
            id=str(data["id"]),
            answer_hash=bytes.fromhex(str(data["answer_hash"])),
            expires_at=parse_datetime(str(data["expires_at"])),
        )


@dataclass(frozen=True)
class PendingRegistration:
    """A submitted signup waiting for an operator decision.

    ``sealed_credential`` is the submitted password encrypted with the
    process secret; it is only opened again when the request is approved.
    """

    id: str
    email: str
    display_name: str
    sealed_credential: str
    created_at: datetime
    status: RegistrationStatus = RegistrationStatus.PENDING
    invited: bool = False

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "displayname": self.display_name,
            "credential": self.sealed_credential,
            "created_at": serialize_datetime(self.created_at),
            "status": self.status.value,
            "invited": self.invited,
        }

    @staticmethod
    def from_record(data: Dict[str, Any]) -> "PendingRegistration":
        return PendingRegistration(
            id=str(data["id"]),
            email=str(data.get("email") or ""),
            display_name=str(data.get("displayname") or ""),
            sealed_credential=str(data.get("credential") or ""),
            created_at=parse_datetime(str(data["created_at"])),
            status=RegistrationStatus(data.get("status", RegistrationStatus.PENDING.value)),
            invited=bool(data.get("invited", False)),
        )


@dataclass(frozen=True)
class Invite:
    """Single-use registration token handed out by an operator."""

    token: str
    created_at: datetime
    expires_at: datetime
    email: Optional[str] = None
    used: bool = False
    used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_record(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "email": self.email,
            "created_at": serialize_datetime(self.created_at),
            "expires_at": serialize_datetime(self.expires_at),
            "used": self.used,
            "used_at": serialize_datetime(self.used_at) if self.used_at else None,
        }

    @staticmethod
    def from_record(data: Dict[str, Any]) -> "Invite":
        used_at = data.get("used_at")
        return Invite(
            token=str(data["token"]),
            email=data.get("email") or None,
            created_at=parse_datetime(str(data["created_at"])),
            expires_at=parse_datetime(str(data["expires_at"])),
            used=bool(data.get("used", False)),
            used_at=parse_datetime(str(used_at)) if used_at else None,
        )


@dataclass(frozen=True)
class VpnPeer:
    """WireGuard peer material assigned to a user."""

    public_key: str
    address: str
    enabled: bool = True

    def to_record(self) -> Dict[str, Any]:
        return {"public_key": self.public_key, "address": self.address, "enabled": self.enabled}

    @staticmethod
    def from_record(data: Dict[str, Any]) -> "VpnPeer":
        return VpnPeer(
            public_key=str(data["public_key"]),
            address=str(data["address"]),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass(frozen=True)
class ActiveUser:
    """An accepted member of the network.

    ``password_hash`` is the internal encoding used for comparisons and
    ``provider_password_hash`` the string written to the identity provider.
    Neither ever holds plaintext.
    """

    id: str
    email: str
    username: str
    password_hash: str
    provider_password_hash: str
    role: UserRole
    status: UserStatus
    created_at: datetime
    updated_at: datetime
    vpn: Optional[VpnPeer] = None

    @property
    def vpn_enabled(self) -> bool:
        return self.vpn is not None and self.vpn.enabled

    def updated(self, **changes: Any) -> "ActiveUser":
        changes.setdefault("updated_at", utcnow())
        return replace(self, **changes)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "password_hash": self.password_hash,
            "provider_password_hash": self.provider_password_hash,
            "role": self.role.value,
            "status": self.status.value,
            "vpn": self.vpn.to_record() if self.vpn else None,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }

    @staticmethod
    def from_record(data: Dict[str, Any]) -> "ActiveUser":
        vpn = data.get("vpn")
        return ActiveUser(
            id=str(data["id"]),
            email=str(data.get("email") or ""),
            username=str(data.get("username") or ""),
            password_hash=str(data.get("password_hash") or ""),
            provider_password_hash=str(data.get("provider_password_hash") or ""),
            role=UserRole(data.get("role", UserRole.USER.value)),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            created_at=parse_datetime(str(data["created_at"])),
            updated_at=parse_datetime(str(data.get("updated_at") or data["created_at"])),
            vpn=VpnPeer.from_record(vpn) if isinstance(vpn, dict) else None,
        )


__all__ = [
    "ActiveUser",
    "ChallengeEntry",
    "Invite",
    "PendingRegistration",
    "RegistrationStatus",
    "UserRole",
    "UserStatus",
    "VpnPeer",
    "parse_datetime",
    "serialize_datetime",
    "utcnow",
]
