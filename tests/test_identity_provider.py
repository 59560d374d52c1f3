from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List

import pytest
import yaml

from onboard.errors import UpstreamUnavailable
from onboard.identity_provider import AutheliaUserFile, parse_reload_command, provider_username


class FakeRunner:
    def __init__(self, returncode: int = 0, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        self.calls: List[List[str]] = []

    def __call__(self, command, **kwargs) -> subprocess.CompletedProcess:
        self.calls.append(list(command))
        return subprocess.CompletedProcess(command, self.returncode, stdout="", stderr=self.stderr)


def _read(path: Path) -> dict:
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def test_propagate_creates_user_entry(tmp_path: Path) -> None:
    path = tmp_path / "users_database.yml"
    runner = FakeRunner()
    provider = AutheliaUserFile(path, reload_command=["docker", "restart", "authelia"], runner=runner)

    provider.propagate("alice@example.com", "alice", "$argon2id$v=19$m=65536,t=3,p=4$c2FsdA$a2V5")

    assert _read(path) == {
        "users": {
            "alice": {
                "displayname": "alice",
                "password": "$argon2id$v=19$m=65536,t=3,p=4$c2FsdA$a2V5",
                "email": "alice@example.com",
                "groups": ["users"],
            }
        }
    }
    assert runner.calls == [["docker", "restart", "authelia"]]


def test_propagate_keeps_other_users_and_groups(tmp_path: Path) -> None:
    path = tmp_path / "users_database.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "users": {
                    "admin": {"displayname": "Admin", "password": "x", "email": "a@x", "groups": ["admins"]},
                    "alice": {"displayname": "alice", "password": "old", "email": "alice@example.com", "groups": ["dev"]},
                }
            }
        ),
        encoding="utf-8",
    )
    provider = AutheliaUserFile(path)

    provider.propagate("alice@example.com", "alice", "new-hash")

    document = _read(path)
    assert document["users"]["admin"]["groups"] == ["admins"]
    assert document["users"]["alice"]["password"] == "new-hash"
    assert document["users"]["alice"]["groups"] == ["dev"]


def test_username_falls_back_to_email(tmp_path: Path) -> None:
    path = tmp_path / "users_database.yml"
    AutheliaUserFile(path).propagate("bob@example.com", "", "hash")

    assert "bob@example.com" in _read(path)["users"]
    assert provider_username("bob@example.com", "  ") == "bob@example.com"
    with pytest.raises(ValueError):
        provider_username("", "")


def test_remove(tmp_path: Path) -> None:
    path = tmp_path / "users_database.yml"
    runner = FakeRunner()
    provider = AutheliaUserFile(path, reload_command=["reload"], runner=runner)
    provider.propagate("alice@example.com", "alice", "hash")

    provider.remove("alice@example.com", "alice")
    provider.remove("ghost@example.com", "ghost")

    assert _read(path) == {"users": {}}
    assert runner.calls == [["reload"], ["reload"]]


def test_reload_failure_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "users_database.yml"
    runner = FakeRunner(returncode=1, stderr="No such container: authelia\n")
    provider = AutheliaUserFile(path, reload_command=["docker", "restart", "authelia"], runner=runner)

    with pytest.raises(UpstreamUnavailable) as excinfo:
        provider.propagate("alice@example.com", "alice", "hash")

    assert excinfo.value.detail == "No such container: authelia"
    assert "alice" in _read(path)["users"]


def test_missing_reload_binary(tmp_path: Path) -> None:
    def runner(command, **kwargs):
        raise FileNotFoundError(command[0])

    provider = AutheliaUserFile(tmp_path / "users.yml", reload_command=["missing-binary"], runner=runner)

    with pytest.raises(UpstreamUnavailable):
        provider.reload()


def test_unreadable_users_file(tmp_path: Path) -> None:
    path = tmp_path / "users_database.yml"
    path.write_text("users: [unterminated", encoding="utf-8")

    with pytest.raises(UpstreamUnavailable):
        AutheliaUserFile(path).propagate("alice@example.com", "alice", "hash")


def test_parse_reload_command() -> None:
    assert parse_reload_command(None) is None
    assert parse_reload_command("   ") is None
    assert parse_reload_command("docker restart 'auth elia'") == ["docker", "restart", "auth elia"]


def _seed_bob(path: Path) -> None:
    path.write_text(
        yaml.safe_dump(
            {
                "users": {
                    "Bob": {
                        "displayname": "Bob",
                        "password": "bob-hash",
                        "email": "bob@example.com",
                        "groups": ["admins"],
                    }
                }
            }
        ),
        encoding="utf-8",
    )


def test_entry_of_another_account_is_not_overwritten(tmp_path: Path) -> None:
    path = tmp_path / "users_database.yml"
    _seed_bob(path)
    runner = FakeRunner()
    provider = AutheliaUserFile(path, reload_command=["reload"], runner=runner)

    with pytest.raises(UpstreamUnavailable):
        provider.propagate("mallory@example.com", "Bob", "mallory-hash")

    assert _read(path)["users"]["Bob"] == {
        "displayname": "Bob",
        "password": "bob-hash",
        "email": "bob@example.com",
        "groups": ["admins"],
    }
    assert runner.calls == []


def test_same_account_keeps_its_groups_regardless_of_email_case(tmp_path: Path) -> None:
    path = tmp_path / "users_database.yml"
    _seed_bob(path)

    AutheliaUserFile(path).propagate("BOB@example.com", "Bob", "new-hash")

    entry = _read(path)["users"]["Bob"]
    assert entry["password"] == "new-hash"
    assert entry["groups"] == ["admins"]


def test_remove_leaves_entry_of_another_account(tmp_path: Path) -> None:
    path = tmp_path / "users_database.yml"
    _seed_bob(path)
    runner = FakeRunner()

    AutheliaUserFile(path, reload_command=["reload"], runner=runner).remove("mallory@example.com", "Bob")

    assert _read(path)["users"]["Bob"]["email"] == "bob@example.com"
    assert runner.calls == []
