from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path

import pytest

from fakes import FakeClock
from onboard.invites import InviteResult, InviteTokenManager
from onboard.records import CollectionLocks, RecordStore


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def records(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path)


@pytest.fixture()
def manager(records: RecordStore, clock: FakeClock) -> InviteTokenManager:
    return InviteTokenManager(records, CollectionLocks(), clock=clock)


def test_issue_uses_default_lifetime(manager: InviteTokenManager, clock: FakeClock) -> None:
    invite = manager.issue()

    assert len(invite.token) >= 32
    assert invite.expires_at - invite.created_at == timedelta(hours=72)
    assert invite.created_at == clock.now
    assert not invite.used
    assert [item.token for item in manager.list()] == [invite.token]


def test_non_positive_lifetime_falls_back_to_default(manager: InviteTokenManager) -> None:
    invite = manager.issue(ttl_hours=0)

    assert invite.expires_at - invite.created_at == timedelta(hours=72)


def test_custom_lifetime_and_email_binding(manager: InviteTokenManager) -> None:
    invite = manager.issue(" Friend@Example.com ", 5)

    assert invite.email == "friend@example.com"
    assert invite.expires_at - invite.created_at == timedelta(hours=5)


def test_second_consumption_is_rejected(manager: InviteTokenManager, clock: FakeClock) -> None:
    invite = manager.issue()

    assert manager.consume(invite.token) is InviteResult.SUCCESS
    assert manager.consume(invite.token) is InviteResult.ALREADY_USED

    stored = manager.get(invite.token)
    assert stored is not None
    assert stored.used
    assert stored.used_at == clock.now


def test_expired_invite(manager: InviteTokenManager, clock: FakeClock) -> None:
    invite = manager.issue(ttl_hours=1)
    clock.advance(hours=1, seconds=1)

    assert manager.consume(invite.token) is InviteResult.EXPIRED


def test_used_takes_precedence_over_expired(manager: InviteTokenManager, clock: FakeClock) -> None:
    invite = manager.issue(ttl_hours=1)
    manager.consume(invite.token)
    clock.advance(hours=2)

    assert manager.consume(invite.token) is InviteResult.ALREADY_USED


def test_unknown_and_blank_tokens(manager: InviteTokenManager) -> None:
    manager.issue()

    assert manager.consume("no-such-token") is InviteResult.NOT_FOUND
    assert manager.consume("   ") is InviteResult.NOT_FOUND


def test_bound_email_must_match(manager: InviteTokenManager) -> None:
    invite = manager.issue("friend@example.com")

    assert manager.consume(invite.token, email="stranger@example.com") is InviteResult.EMAIL_MISMATCH
    assert manager.consume(invite.token, email="FRIEND@example.com") is InviteResult.SUCCESS


def test_used_flag_survives_restart(records: RecordStore, clock: FakeClock) -> None:
    first = InviteTokenManager(records, CollectionLocks(), clock=clock)
    invite = first.issue()
    first.consume(invite.token)

    second = InviteTokenManager(records, CollectionLocks(), clock=clock)

    assert second.consume(invite.token) is InviteResult.ALREADY_USED


def test_revoke(manager: InviteTokenManager) -> None:
    invite = manager.issue()

    assert manager.revoke(invite.token) is True
    assert manager.revoke(invite.token) is False
    assert manager.get(invite.token) is None
    assert manager.consume(invite.token) is InviteResult.NOT_FOUND


def test_concurrent_consumption_succeeds_once(manager: InviteTokenManager) -> None:
    invite = manager.issue()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: manager.consume(invite.token), range(8)))

    assert results.count(InviteResult.SUCCESS) == 1
    assert results.count(InviteResult.ALREADY_USED) == 7


def test_default_ttl_must_be_positive(records: RecordStore) -> None:
    with pytest.raises(ValueError):
        InviteTokenManager(records, CollectionLocks(), default_ttl_hours=0)
