"""Self-service onboarding: challenges, registrations, approvals and access."""

from __future__ import annotations

from typing import Any

from .config import Settings, load_settings
from .records import RecordStore, resolve_data_dir


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the onboarding HTTP application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "RecordStore",
    "Settings",
    "create_app",
    "load_settings",
    "resolve_data_dir",
]
