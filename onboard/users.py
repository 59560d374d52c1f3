"""Operations on accepted users: profile edits, VPN access, removal."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .credentials import CredentialIssuer
from .errors import NotFoundError, UpstreamUnavailable, ValidationError
from .identity_provider import CredentialPropagator, provider_username
from .models import ActiveUser, UserRole, UserStatus, VpnPeer, utcnow
from .records import USER_COLLECTION, CollectionLocks, Record, RecordStore
from .vpn import DEFAULT_VPN_NETWORK, allocate_address, generate_peer_keypair, normalise_public_key

logger = logging.getLogger("onboard.users")

_MAX_USERNAME_LENGTH = 64


def _index_of(records: List[Record], user_id: str) -> Optional[int]:
    for index, item in enumerate(records):
        if str(item.get("id")) == user_id:
            return index
    return None


def ensure_username_available(
    users: List[Record],
    email: str,
    username: str,
    *,
    user_id: Optional[str] = None,
) -> None:
    """Raise :class:`ValidationError` if another account holds the login name.

    Accounts sharing ``email`` may share a name; they map to one provider entry.
    """

    wanted = provider_username(email, username).casefold()
    for item in users:
        if user_id is not None and str(item.get("id")) == user_id:
            continue
        other_email = str(item.get("email") or "")
        if other_email == email:
            continue
        taken = provider_username(other_email, str(item.get("username") or ""))
        if taken.casefold() == wanted:
            raise ValidationError(f"Username {taken!r} is already taken")


class UserDirectory:
    """Read and mutate the ``users`` collection under its collection lock."""

    def __init__(
        self,
        records: RecordStore,
        locks: CollectionLocks,
        *,
        issuer: Optional[CredentialIssuer] = None,
        propagator: Optional[CredentialPropagator] = None,
        vpn_network: str = DEFAULT_VPN_NETWORK,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._records = records
        self._locks = locks
        self._issuer = issuer or CredentialIssuer()
        self._propagator = propagator
        self._vpn_network = vpn_network
        self._clock = clock

    def list(self) -> List[ActiveUser]:
        with self._locks.hold(USER_COLLECTION):
            users = self._records.load(USER_COLLECTION)
        return [ActiveUser.from_record(item) for item in users]

    def get(self, user_id: str) -> ActiveUser:
        with self._locks.hold(USER_COLLECTION):
            users = self._records.load(USER_COLLECTION)
        index = _index_of(users, user_id)
        if index is None:
            raise NotFoundError(f"User {user_id} not found")
        return ActiveUser.from_record(users[index])

    def authenticate(self, email: str, password: str) -> Optional[ActiveUser]:
        """Return the active user matching ``email`` and ``password``, if any."""

        normalised = email.strip().lower()
        for user in self.list():
            if user.email != normalised or user.status is not UserStatus.ACTIVE:
                continue
            if self._issuer.verify(password, user.password_hash):
                return user
        return None

    def update(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[UserRole] = None,
        status: Optional[UserStatus] = None,
    ) -> ActiveUser:
        """Apply profile changes. Renames are mirrored to the identity provider."""

        changes = {}
        if username is not None:
            cleaned = username.strip()
            if not cleaned:
                raise ValidationError("Username must not be empty")
            if len(cleaned) > _MAX_USERNAME_LENGTH:
                raise ValidationError("Username is too long")
            changes["username"] = cleaned
        if email is not None:
            cleaned_email = email.strip().lower()
            if not cleaned_email:
                raise ValidationError("Email must not be empty")
            changes["email"] = cleaned_email
        if role is not None:
            changes["role"] = UserRole(role)
        if status is not None:
            changes["status"] = UserStatus(status)

        def _check_name(users: List[Record], user: ActiveUser) -> None:
            ensure_username_available(users, user.email, user.username, user_id=user.id)

        renamed = "username" in changes or "email" in changes
        previous, updated = self._mutate(
            user_id,
            lambda user: user.updated(updated_at=self._clock(), **changes),
            validate=_check_name if renamed else None,
        )
        logger.info("Updated user %s (%s)", user_id, ", ".join(sorted(changes)) or "no changes")

        if self._propagator is not None and (
            previous.username != updated.username or previous.email != updated.email
        ):
            old_key = provider_username(previous.email, previous.username)
            new_key = provider_username(updated.email, updated.username)
            try:
                if old_key == new_key:
                    self._propagator.remove(previous.email, previous.username)
                    self._propagator.propagate(
                        updated.email,
                        updated.username,
                        updated.provider_password_hash,
                    )
                else:
                    # the old entry stays until the new name is accepted
                    self._propagator.propagate(
                        updated.email,
                        updated.username,
                        updated.provider_password_hash,
                    )
                    self._propagator.remove(previous.email, previous.username)
            except UpstreamUnavailable as exc:
                exc.committed = updated
                raise
        return updated

    def suspend(self, user_id: str) -> ActiveUser:
        return self.update(user_id, status=UserStatus.SUSPENDED)

    def delete(self, user_id: str) -> ActiveUser:
        with self._locks.hold(USER_COLLECTION):
            users = self._records.load(USER_COLLECTION)
            index = _index_of(users, user_id)
            if index is None:
                raise NotFoundError(f"User {user_id} not found")
            removed = ActiveUser.from_record(users.pop(index))
            self._records.save(USER_COLLECTION, users)

        logger.info("Deleted user %s", user_id)
        if self._propagator is not None:
            try:
                self._propagator.remove(removed.email, removed.username)
            except UpstreamUnavailable as exc:
                exc.committed = removed
                raise
        return removed

    # ------------------------------------------------------------------
    # VPN access
    # ------------------------------------------------------------------
    def enable_vpn(
        self,
        user_id: str,
        *,
        public_key: Optional[str] = None,
    ) -> Tuple[ActiveUser, Optional[str]]:
        """Enable VPN access, assigning peer material on first use.

        Returns the updated user and, when the key pair was generated here, the
        peer private key. It is not stored and cannot be retrieved again.
        """

        supplied = normalise_public_key(public_key) if public_key else None
        generated_private: Optional[str] = None

        with self._locks.hold(USER_COLLECTION):
            users = self._records.load(USER_COLLECTION)
            index = _index_of(users, user_id)
            if index is None:
                raise NotFoundError(f"User {user_id} not found")
            user = ActiveUser.from_record(users[index])

            if user.vpn is None:
                taken = [
                    str(item["vpn"]["address"])
                    for item in users
                    if isinstance(item.get("vpn"), dict) and item["vpn"].get("address")
                ]
                address = allocate_address(self._vpn_network, taken)
                if supplied is None:
                    generated_private, supplied = generate_peer_keypair()
                peer = VpnPeer(public_key=supplied, address=address, enabled=True)
            else:
                peer = VpnPeer(
                    public_key=supplied or user.vpn.public_key,
                    address=user.vpn.address,
                    enabled=True,
                )

            updated = user.updated(vpn=peer, updated_at=self._clock())
            users[index] = updated.to_record()
            self._records.save(USER_COLLECTION, users)

        logger.info("Enabled VPN access for user %s at %s", user_id, peer.address)
        return updated, generated_private

    def disable_vpn(self, user_id: str) -> ActiveUser:
        def _disable(user: ActiveUser) -> ActiveUser:
            if user.vpn is None or not user.vpn.enabled:
                return user
            peer = VpnPeer(public_key=user.vpn.public_key, address=user.vpn.address, enabled=False)
            return user.updated(vpn=peer, updated_at=self._clock())

        _, updated = self._mutate(user_id, _disable)
        logger.info("Disabled VPN access for user %s", user_id)
        return updated

    def _mutate(
        self,
        user_id: str,
        change: Callable[[ActiveUser], ActiveUser],
        *,
        validate: Optional[Callable[[List[Record], ActiveUser], None]] = None,
    ) -> Tuple[ActiveUser, ActiveUser]:
        with self._locks.hold(USER_COLLECTION):
            users = self._records.load(USER_COLLECTION)
            index = _index_of(users, user_id)
            if index is None:
                raise NotFoundError(f"User {user_id} not found")
            previous = ActiveUser.from_record(users[index])
            updated = change(previous)
            if validate is not None:
                validate(users, updated)
            if updated is not previous:
                users[index] = updated.to_record()
                self._records.save(USER_COLLECTION, users)
        return previous, updated


__all__ = ["UserDirectory", "ensure_username_available"]
