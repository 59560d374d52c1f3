"""Exception taxonomy shared by the onboarding core and the HTTP layer."""
from __future__ import annotations

from typing import Any, Optional


class OnboardingError(Exception):
    """Base class for every error raised by the onboarding core."""


class ValidationError(OnboardingError, ValueError):
    """Raised when caller supplied input is unusable. Never worth retrying."""


class NotFoundError(OnboardingError, LookupError):
    """Raised when a registration, invite, or user id does not exist."""


class VerificationError(OnboardingError, ValueError):
    """Raised when a challenge receipt or invite cannot authorise a request.

    ``reason`` carries the machine readable state (``expired``,
    ``already_used``, ``unknown`` ...).
    """

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class PersistenceError(OnboardingError, OSError):
    """Raised when a collection cannot be written to local storage.

    Saves are atomic, so retrying the whole operation is safe.
    """


class UpstreamUnavailable(OnboardingError, RuntimeError):
    """Raised when an external collaborator fails.

    Local state may already be committed: ``committed`` holds whatever record
    survived (for example the approved user) so callers only retry the
    propagation step. ``detail`` is the upstream response body, passed
    through verbatim.
    """

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
        committed: Any = None,
    ) -> None:
        super().__init__(message)
        self.detail = detail
        self.status_code = status_code
        self.committed = committed


__all__ = [
    "NotFoundError",
    "OnboardingError",
    "PersistenceError",
    "UpstreamUnavailable",
    "ValidationError",
    "VerificationError",
]
