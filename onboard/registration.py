"""Registration state machine: pending -> approved (active user) or rejected."""
from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from .challenges import ReceiptIssuer
from .credentials import CredentialIssuer
from .errors import (
    NotFoundError,
    PersistenceError,
    UpstreamUnavailable,
    ValidationError,
    VerificationError,
)
from .identity_provider import CredentialPropagator
from .invites import InviteResult, InviteTokenManager
from .models import ActiveUser, PendingRegistration, UserRole, UserStatus, utcnow
from .records import PENDING_COLLECTION, USER_COLLECTION, CollectionLocks, Record, RecordStore
from .sealing import CredentialSealer
from .users import ensure_username_available

logger = logging.getLogger("onboard.registration")

_MAX_EMAIL_LENGTH = 254
_MAX_DISPLAY_NAME_LENGTH = 64
_MAX_CREDENTIAL_LENGTH = 1024
DEFAULT_APPEND_ATTEMPTS = 3


def _normalise_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value:
        raise ValidationError("Email is required")
    if len(value) > _MAX_EMAIL_LENGTH:
        raise ValidationError("Email is too long")
    return value


def _normalise_display_name(display_name: Optional[str]) -> str:
    value = (display_name or "").strip()
    if len(value) > _MAX_DISPLAY_NAME_LENGTH:
        raise ValidationError("Display name is too long")
    return value


def _raise_for_invite(result: InviteResult) -> None:
    if result is not InviteResult.SUCCESS:
        raise VerificationError(
            f"Invite token cannot be used ({result.value})",
            reason=result.value,
        )


def _index_of(records: List[Record], record_id: str) -> Optional[int]:
    for index, item in enumerate(records):
        if str(item.get("id")) == record_id:
            return index
    return None


class RegistrationWorkflow:
    """Coordinates submission, approval and rejection of registrations.

    A request enters ``pending`` through :meth:`submit` and leaves it exactly
    once, through :meth:`approve` or :meth:`reject`. Approval writes the new
    user before it removes the pending record, so a failure between the two
    writes can duplicate a request but never lose one.

    When ``receipts`` is configured, :meth:`submit` only accepts callers that
    present an unused verification receipt from a solved challenge.
    """

    def __init__(
        self,
        records: RecordStore,
        locks: CollectionLocks,
        *,
        issuer: CredentialIssuer,
        sealer: CredentialSealer,
        invites: Optional[InviteTokenManager] = None,
        receipts: Optional[ReceiptIssuer] = None,
        propagator: Optional[CredentialPropagator] = None,
        require_invite: bool = False,
        append_attempts: int = DEFAULT_APPEND_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if require_invite and invites is None:
            raise ValueError("require_invite needs an InviteTokenManager")
        if append_attempts < 1:
            raise ValueError("append_attempts must be at least 1")
        self._records = records
        self._locks = locks
        self._issuer = issuer
        self._sealer = sealer
        self._invites = invites
        self._receipts = receipts
        self._propagator = propagator
        self._require_invite = require_invite
        self._append_attempts = append_attempts
        self._clock = clock

    @property
    def requires_receipt(self) -> bool:
        return self._receipts is not None

    @property
    def requires_invite(self) -> bool:
        return self._require_invite

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(
        self,
        email: str,
        display_name: str,
        credential: str,
        *,
        receipt: Optional[str] = None,
        invite_token: Optional[str] = None,
    ) -> PendingRegistration:
        """Record a new pending registration. Duplicate emails are allowed."""

        normalised_email = _normalise_email(email)
        normalised_name = _normalise_display_name(display_name)
        if not credential:
            raise ValidationError("Password is required")
        if len(credential) > _MAX_CREDENTIAL_LENGTH:
            raise ValidationError("Password is too long")

        if self._receipts is not None and not receipt:
            raise VerificationError(
                "Solve a verification challenge before registering",
                reason="receipt_required",
            )

        token = invite_token.strip() if invite_token else ""
        if self._require_invite and not token:
            raise VerificationError("An invite token is required", reason="invite_required")
        if token:
            if self._invites is None:
                raise ValidationError("Invite tokens are not accepted by this service")
            # a rejected invite leaves the receipt unspent
            _raise_for_invite(self._invites.check(token, email=normalised_email))

        if self._receipts is not None:
            self._receipts.redeem(receipt)
        if token:
            _raise_for_invite(self._invites.consume(token, email=normalised_email))

        registration = PendingRegistration(
            id=uuid.uuid4().hex,
            email=normalised_email,
            display_name=normalised_name,
            sealed_credential=self._sealer.seal(credential),
            created_at=self._clock(),
            invited=bool(token),
        )
        with self._locks.hold(PENDING_COLLECTION):
            pending = self._records.load(PENDING_COLLECTION)
            pending.append(registration.to_record())
            self._records.save(PENDING_COLLECTION, pending)

        logger.info("Registration %s submitted", registration.id)
        return registration

    def list_pending(self) -> List[PendingRegistration]:
        with self._locks.hold(PENDING_COLLECTION):
            pending = self._records.load(PENDING_COLLECTION)
        return [PendingRegistration.from_record(item) for item in pending]

    def get_pending(self, registration_id: str) -> PendingRegistration:
        with self._locks.hold(PENDING_COLLECTION):
            pending = self._records.load(PENDING_COLLECTION)
        index = _index_of(pending, registration_id)
        if index is None:
            raise NotFoundError(f"Registration {registration_id} not found")
        return PendingRegistration.from_record(pending[index])

    # ------------------------------------------------------------------
    # Adjudication
    # ------------------------------------------------------------------
    def approve(self, registration_id: str) -> ActiveUser:
        """Turn a pending registration into an active user.

        Raises :class:`UpstreamUnavailable` with ``committed`` set to the new
        user when the identity provider could not be updated; the user stays
        committed and :meth:`propagate` retries the provider step.
        """

        registration = self.get_pending(registration_id)
        try:
            plaintext = self._sealer.open(registration.sealed_credential)
        except ValueError as exc:
            logger.error("Registration %s has an unreadable credential: %s", registration_id, exc)
            raise VerificationError(
                f"The password stored with registration {registration_id} cannot be decrypted "
                "with the current secret key; reject it and ask for a new registration",
                reason="credential_unreadable",
            ) from exc
        now = self._clock()
        user = ActiveUser(
            id=uuid.uuid4().hex,
            email=registration.email,
            username=registration.display_name or registration.email,
            password_hash=self._issuer.hash(plaintext),
            provider_password_hash=self._issuer.hash_for_provider(plaintext),
            role=UserRole.USER,
            status=UserStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )

        with self._locks.hold(PENDING_COLLECTION, USER_COLLECTION):
            pending = self._records.load(PENDING_COLLECTION)
            index = _index_of(pending, registration_id)
            if index is None:
                raise NotFoundError(f"Registration {registration_id} not found")

            ensure_username_available(
                self._records.load(USER_COLLECTION), user.email, user.username
            )
            self._append_user_locked(user)

            del pending[index]
            try:
                self._records.save(PENDING_COLLECTION, pending)
            except PersistenceError:
                logger.exception(
                    "User %s was created but registration %s could not be removed",
                    user.id,
                    registration_id,
                )
                raise

        logger.info("Registration %s approved as user %s", registration_id, user.id)
        self._propagate_committed(user)
        return user

    def reject(self, registration_id: str) -> None:
        with self._locks.hold(PENDING_COLLECTION):
            pending = self._records.load(PENDING_COLLECTION)
            index = _index_of(pending, registration_id)
            if index is None:
                raise NotFoundError(f"Registration {registration_id} not found")
            del pending[index]
            self._records.save(PENDING_COLLECTION, pending)

        logger.info("Registration %s rejected", registration_id)

    def propagate(self, user_id: str) -> ActiveUser:
        """Re-send an existing user's credential to the identity provider."""

        with self._locks.hold(USER_COLLECTION):
            users = self._records.load(USER_COLLECTION)
        index = _index_of(users, user_id)
        if index is None:
            raise NotFoundError(f"User {user_id} not found")
        user = ActiveUser.from_record(users[index])
        self._propagate_committed(user)
        return user

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _append_user_locked(self, user: ActiveUser) -> None:
        for attempt in range(1, self._append_attempts + 1):
            try:
                users = self._records.load(USER_COLLECTION)
                users.append(user.to_record())
                self._records.save(USER_COLLECTION, users)
                return
            except PersistenceError as exc:
                if attempt == self._append_attempts:
                    raise
                logger.warning(
                    "Writing user %s failed (attempt %d/%d): %s",
                    user.id,
                    attempt,
                    self._append_attempts,
                    exc,
                )
                time.sleep(0.05 * attempt)

    def _propagate_committed(self, user: ActiveUser) -> None:
        if self._propagator is None:
            return
        try:
            self._propagator.propagate(user.email, user.username, user.provider_password_hash)
        except UpstreamUnavailable as exc:
            exc.committed = user
            logger.error("Identity provider update for user %s failed: %s", user.id, exc)
            raise


__all__ = ["DEFAULT_APPEND_ATTEMPTS", "RegistrationWorkflow"]
