from __future__ import annotations

import base64
import uuid
from pathlib import Path

import pytest

from fakes import FAST_KDF, FakeClock, RecordingPropagator
from onboard.credentials import CredentialIssuer
from onboard.errors import NotFoundError, UpstreamUnavailable, ValidationError
from onboard.models import ActiveUser, UserRole, UserStatus
from onboard.records import USER_COLLECTION, CollectionLocks, RecordStore
from onboard.users import UserDirectory
from onboard.vpn import generate_peer_keypair


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def issuer() -> CredentialIssuer:
    return CredentialIssuer(internal=FAST_KDF, provider=FAST_KDF)


@pytest.fixture()
def records(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path)


@pytest.fixture()
def propagator() -> RecordingPropagator:
    return RecordingPropagator()


@pytest.fixture()
def directory(
    records: RecordStore,
    issuer: CredentialIssuer,
    propagator: RecordingPropagator,
    clock: FakeClock,
) -> UserDirectory:
    return UserDirectory(
        records,
        CollectionLocks(),
        issuer=issuer,
        propagator=propagator,
        clock=clock,
    )


def _add_user(
    records: RecordStore,
    issuer: CredentialIssuer,
    clock: FakeClock,
    email: str,
    username: str,
    password: str = "secret-password",
    status: UserStatus = UserStatus.ACTIVE,
) -> ActiveUser:
    user = ActiveUser(
        id=uuid.uuid4().hex,
        email=email,
        username=username,
        password_hash=issuer.hash(password),
        provider_password_hash=issuer.hash_for_provider(password),
        role=UserRole.USER,
        status=status,
        created_at=clock.now,
        updated_at=clock.now,
    )
    stored = records.load(USER_COLLECTION)
    stored.append(user.to_record())
    records.save(USER_COLLECTION, stored)
    return user


def test_list_and_get(directory: UserDirectory, records, issuer, clock) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")
    bob = _add_user(records, issuer, clock, "bob@example.com", "bob")

    assert [user.id for user in directory.list()] == [alice.id, bob.id]
    assert directory.get(bob.id) == bob
    with pytest.raises(NotFoundError):
        directory.get("missing")


def test_authenticate(directory: UserDirectory, records, issuer, clock) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice", "right-password")
    _add_user(
        records,
        issuer,
        clock,
        "sus@example.com",
        "sus",
        "right-password",
        status=UserStatus.SUSPENDED,
    )

    assert directory.authenticate("ALICE@example.com", "right-password") == alice
    assert directory.authenticate("alice@example.com", "wrong-password") is None
    assert directory.authenticate("sus@example.com", "right-password") is None
    assert directory.authenticate("nobody@example.com", "right-password") is None


def test_rename_is_mirrored_to_provider(
    directory: UserDirectory, records, issuer, clock, propagator: RecordingPropagator
) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")
    clock.advance(minutes=5)

    updated = directory.update(alice.id, username="  alice.w  ", role=UserRole.ADMIN)

    assert updated.username == "alice.w"
    assert updated.role is UserRole.ADMIN
    assert updated.updated_at == clock.now
    assert directory.get(alice.id) == updated
    assert propagator.removed == [("alice@example.com", "alice")]
    assert propagator.propagated == [("alice@example.com", "alice.w", alice.provider_password_hash)]


def test_status_change_does_not_touch_provider(
    directory: UserDirectory, records, issuer, clock, propagator: RecordingPropagator
) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")

    suspended = directory.suspend(alice.id)

    assert suspended.status is UserStatus.SUSPENDED
    assert propagator.propagated == []
    assert propagator.removed == []


def test_update_validation(directory: UserDirectory, records, issuer, clock) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")

    with pytest.raises(ValidationError):
        directory.update(alice.id, username="   ")
    with pytest.raises(ValidationError):
        directory.update(alice.id, username="x" * 65)
    with pytest.raises(ValidationError):
        directory.update(alice.id, email=" ")
    with pytest.raises(NotFoundError):
        directory.update("missing", username="ghost")


def test_update_keeps_local_change_when_provider_fails(records, issuer, clock) -> None:
    propagator = RecordingPropagator(fail=True)
    directory = UserDirectory(records, CollectionLocks(), issuer=issuer, propagator=propagator, clock=clock)
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")

    with pytest.raises(UpstreamUnavailable) as excinfo:
        directory.update(alice.id, username="alice2")

    assert excinfo.value.committed.username == "alice2"
    assert directory.get(alice.id).username == "alice2"


def test_delete(directory: UserDirectory, records, issuer, clock, propagator) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")

    removed = directory.delete(alice.id)

    assert removed.id == alice.id
    assert propagator.removed == [("alice@example.com", "alice")]
    with pytest.raises(NotFoundError):
        directory.get(alice.id)
    with pytest.raises(NotFoundError):
        directory.delete(alice.id)


# ----------------------------------------------------------------------
# VPN access
# ----------------------------------------------------------------------
def test_enable_vpn_generates_keys_and_allocates_addresses(
    directory: UserDirectory, records, issuer, clock
) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")
    bob = _add_user(records, issuer, clock, "bob@example.com", "bob")

    alice_enabled, alice_private = directory.enable_vpn(alice.id)
    bob_enabled, _ = directory.enable_vpn(bob.id)

    assert alice_private is not None
    assert len(base64.b64decode(alice_private)) == 32
    assert alice_enabled.vpn_enabled
    assert alice_enabled.vpn.address == "10.66.0.2/32"
    assert bob_enabled.vpn.address == "10.66.0.3/32"
    assert len(base64.b64decode(alice_enabled.vpn.public_key)) == 32
    assert alice_private not in records.path_for(USER_COLLECTION).read_text(encoding="utf-8")


def test_disable_and_reenable_keep_peer(directory: UserDirectory, records, issuer, clock) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")
    enabled, _ = directory.enable_vpn(alice.id)

    disabled = directory.disable_vpn(alice.id)
    assert not disabled.vpn_enabled
    assert disabled.vpn.address == enabled.vpn.address

    again, private_key = directory.enable_vpn(alice.id)
    assert private_key is None
    assert again.vpn_enabled
    assert again.vpn.public_key == enabled.vpn.public_key
    assert again.vpn.address == enabled.vpn.address


def test_disable_without_vpn_is_a_no_op(directory: UserDirectory, records, issuer, clock) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")

    assert directory.disable_vpn(alice.id) == alice


def test_enable_vpn_with_client_key(directory: UserDirectory, records, issuer, clock) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")
    _, public_key = generate_peer_keypair()

    enabled, private_key = directory.enable_vpn(alice.id, public_key=public_key)

    assert private_key is None
    assert enabled.vpn.public_key == public_key
    with pytest.raises(ValidationError):
        directory.enable_vpn(alice.id, public_key="not-a-key")


def test_address_pool_exhaustion(records, issuer, clock) -> None:
    directory = UserDirectory(records, CollectionLocks(), issuer=issuer, vpn_network="10.9.0.0/30", clock=clock)
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")
    bob = _add_user(records, issuer, clock, "bob@example.com", "bob")

    enabled, _ = directory.enable_vpn(alice.id)
    assert enabled.vpn.address == "10.9.0.2/32"
    with pytest.raises(ValidationError):
        directory.enable_vpn(bob.id)


def test_rename_onto_another_users_name_is_refused(
    directory: UserDirectory, records, issuer, clock, propagator: RecordingPropagator
) -> None:
    _add_user(records, issuer, clock, "bob@example.com", "Bob")
    mallory = _add_user(records, issuer, clock, "mallory@example.com", "mallory")

    with pytest.raises(ValidationError):
        directory.update(mallory.id, username="BOB")

    assert directory.get(mallory.id).username == "mallory"
    assert propagator.removed == []
    assert propagator.propagated == []


def test_rename_keeps_old_provider_entry_until_new_name_is_accepted(records, issuer, clock) -> None:
    class RefusingPropagator(RecordingPropagator):
        def propagate(self, email: str, display_name: str, encoded_hash: str) -> None:
            raise UpstreamUnavailable("username belongs to another account")

    propagator = RefusingPropagator()
    directory = UserDirectory(records, CollectionLocks(), issuer=issuer, propagator=propagator, clock=clock)
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")

    with pytest.raises(UpstreamUnavailable):
        directory.update(alice.id, username="admin")

    assert propagator.removed == []


def test_email_change_under_same_name_replaces_entry(
    directory: UserDirectory, records, issuer, clock, propagator: RecordingPropagator
) -> None:
    alice = _add_user(records, issuer, clock, "alice@example.com", "alice")

    directory.update(alice.id, email="alice@corp.example.com")

    assert propagator.removed == [("alice@example.com", "alice")]
    assert propagator.propagated == [
        ("alice@corp.example.com", "alice", alice.provider_password_hash)
    ]
