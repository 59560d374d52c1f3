"""Test doubles shared by the onboarding tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Tuple

from onboard.credentials import KdfParameters
from onboard.errors import UpstreamUnavailable

FAST_KDF = KdfParameters(time_cost=1, memory_cost=1024, parallelism=1)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingPropagator:
    """Collects propagation calls; set ``fail`` to simulate an unreachable provider."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.propagated: List[Tuple[str, str, str]] = []
        self.removed: List[Tuple[str, str]] = []

    def propagate(self, email: str, display_name: str, encoded_hash: str) -> None:
        if self.fail:
            raise UpstreamUnavailable("identity provider is down", detail="connection refused")
        self.propagated.append((email, display_name, encoded_hash))

    def remove(self, email: str, display_name: str) -> None:
        if self.fail:
            raise UpstreamUnavailable("identity provider is down")
        self.removed.append((email, display_name))
