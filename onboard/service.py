"""HTTP API for self-service registration and operator onboarding tasks."""

from __future__ import annotations

import functools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import anyio
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, field_validator

from .challenges import ChallengeResult, ChallengeStore, ReceiptIssuer
from .config import Settings, load_settings
from .credentials import CredentialIssuer
from .errors import (
    NotFoundError,
    PersistenceError,
    UpstreamUnavailable,
    ValidationError,
    VerificationError,
)
from .identity_provider import AutheliaUserFile, CredentialPropagator
from .invites import InviteTokenManager
from .models import ActiveUser, Invite, PendingRegistration, UserRole, UserStatus, utcnow
from .records import (
    CHALLENGE_COLLECTION,
    INVITE_COLLECTION,
    PENDING_COLLECTION,
    USER_COLLECTION,
    CollectionLocks,
    RecordStore,
)
from .registration import RegistrationWorkflow
from .sealing import CredentialSealer
from .security import OperatorAuth
from .users import UserDirectory
from .vpn import VpnProvisionerClient

logger = logging.getLogger("onboard.service")


# ----------------------------------------------------------------------
# Request and response models
# ----------------------------------------------------------------------
class ChallengeResponse(BaseModel):
    id: str
    question: str
    expires_in: int


class ChallengeVerifyRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=128)
    answer: str = Field(..., min_length=1, max_length=16)

    @field_validator("answer", mode="before")
    @classmethod
    def _coerce_answer(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ChallengeVerifyResponse(BaseModel):
    result: str
    receipt: Optional[str] = None


class RegistrationRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    displayname: str = Field(default="", max_length=64)
    password: str = Field(..., min_length=1, max_length=1024)
    receipt: Optional[str] = Field(default=None, max_length=1024)
    invite: Optional[str] = Field(default=None, max_length=256)


class RegistrationResponse(BaseModel):
    id: str
    email: str
    displayname: str
    status: str
    invited: bool
    created_at: datetime


class RegistrationListResponse(BaseModel):
    registrations: List[RegistrationResponse]


class VpnView(BaseModel):
    public_key: str
    address: str
    enabled: bool


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    role: str
    status: str
    vpn: Optional[VpnView] = None
    created_at: datetime
    updated_at: datetime


class UserListResponse(BaseModel):
    users: List[UserResponse]


class UserUpdateRequest(BaseModel):
    username: Optional[str] = Field(default=None, min_length=1, max_length=64)
    email: Optional[str] = Field(default=None, min_length=3, max_length=254)
    role: Optional[UserRole] = None
    status: Optional[UserStatus] = None


class VpnEnableRequest(BaseModel):
    public_key: Optional[str] = Field(default=None, max_length=64)


class VpnEnableResponse(BaseModel):
    user: UserResponse
    private_key: Optional[str] = None


class InviteCreateRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    expires_hours: Optional[int] = Field(default=None, ge=0, le=24 * 365)


class InviteResponse(BaseModel):
    token: str
    email: Optional[str]
    created_at: datetime
    expires_at: datetime
    used: bool
    used_at: Optional[datetime] = None


class InviteListResponse(BaseModel):
    invites: List[InviteResponse]


def _registration_view(registration: PendingRegistration) -> RegistrationResponse:
    return RegistrationResponse(
        id=registration.id,
        email=registration.email,
        displayname=registration.display_name,
        status=registration.status.value,
        invited=registration.invited,
        created_at=registration.created_at,
    )


def _user_view(user: ActiveUser) -> UserResponse:
    vpn = None
    if user.vpn is not None:
        vpn = VpnView(public_key=user.vpn.public_key, address=user.vpn.address, enabled=user.vpn.enabled)
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        role=user.role.value,
        status=user.status.value,
        vpn=vpn,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _invite_view(invite: Invite) -> InviteResponse:
    return InviteResponse(
        token=invite.token,
        email=invite.email,
        created_at=invite.created_at,
        expires_at=invite.expires_at,
        used=invite.used,
        used_at=invite.used_at,
    )


# ----------------------------------------------------------------------
# Component wiring
# ----------------------------------------------------------------------
@dataclass
class OnboardingServices:
    """Every long-lived component the HTTP app and the CLI share."""

    settings: Settings
    records: RecordStore
    locks: CollectionLocks
    challenges: ChallengeStore
    receipts: Optional[ReceiptIssuer]
    invites: InviteTokenManager
    workflow: RegistrationWorkflow
    users: UserDirectory
    vpn: VpnProvisionerClient
    propagator: Optional[CredentialPropagator]


def build_services(
    settings: Settings,
    *,
    propagator: Optional[CredentialPropagator] = None,
    vpn_client: Optional[VpnProvisionerClient] = None,
    clock: Callable[[], datetime] = utcnow,
) -> OnboardingServices:
    """Construct the component graph described by ``settings``.

    Raises ``ValueError`` when no secret key is configured.
    """

    if not settings.secret_key:
        raise ValueError("ONBOARD_SECRET_KEY must be set")

    records = RecordStore(settings.data_dir)
    records.ensure(PENDING_COLLECTION, INVITE_COLLECTION, USER_COLLECTION, CHALLENGE_COLLECTION)
    locks = CollectionLocks()

    if propagator is None and settings.idp_users_file is not None:
        propagator = AutheliaUserFile(
            settings.idp_users_file,
            reload_command=settings.idp_reload_command,
        )

    issuer = CredentialIssuer(internal=settings.internal_kdf, provider=settings.provider_kdf)
    receipts = (
        ReceiptIssuer(settings.secret_key, ttl=settings.receipt_ttl, clock=clock)
        if settings.require_receipt
        else None
    )
    invites = InviteTokenManager(
        records,
        locks,
        default_ttl_hours=settings.invite_ttl_hours,
        clock=clock,
    )
    workflow = RegistrationWorkflow(
        records,
        locks,
        issuer=issuer,
        sealer=CredentialSealer(settings.secret_key),
        invites=invites,
        receipts=receipts,
        propagator=propagator,
        require_invite=settings.require_invite,
        clock=clock,
    )
    users = UserDirectory(
        records,
        locks,
        issuer=issuer,
        propagator=propagator,
        vpn_network=settings.vpn_network,
        clock=clock,
    )
    challenges = ChallengeStore(
        ttl=settings.challenge_ttl,
        records=records,
        reaper_interval=settings.reaper_interval,
        clock=clock,
    )
    return OnboardingServices(
        settings=settings,
        records=records,
        locks=locks,
        challenges=challenges,
        receipts=receipts,
        invites=invites,
        workflow=workflow,
        users=users,
        vpn=vpn_client or VpnProvisionerClient(settings.vpn_provisioner_url),
        propagator=propagator,
    )


async def _run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))


# ----------------------------------------------------------------------
# Error mapping
# ----------------------------------------------------------------------
def register_error_handlers(app: FastAPI) -> None:
    """Translate the onboarding error taxonomy into HTTP responses."""

    @app.exception_handler(ValidationError)
    async def handle_validation_error(_: Request, exc: ValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def handle_not_found(_: Request, exc: NotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(VerificationError)
    async def handle_verification_error(_: Request, exc: VerificationError):
        code = (
            status.HTTP_409_CONFLICT
            if exc.reason == "already_used"
            else status.HTTP_400_BAD_REQUEST
        )
        return JSONResponse(status_code=code, content={"detail": str(exc), "reason": exc.reason})

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(_: Request, exc: PersistenceError):
        logger.error("Storage failure: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Storage is temporarily unavailable; retry the request"},
        )

    @app.exception_handler(UpstreamUnavailable)
    async def handle_upstream_error(_: Request, exc: UpstreamUnavailable):
        payload: Dict[str, object] = {"detail": str(exc)}
        if exc.detail:
            payload["upstream"] = exc.detail
        if isinstance(exc.committed, ActiveUser):
            payload["committed"] = _user_view(exc.committed).model_dump(mode="json")
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=payload)


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------
def register_public_routes(app: FastAPI, services: OnboardingServices) -> None:
    """Endpoints reachable without operator credentials."""

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/captcha/challenge", response_model=ChallengeResponse)
    async def issue_challenge() -> ChallengeResponse:
        challenge_id, question = await _run_blocking(services.challenges.issue)
        return ChallengeResponse(
            id=challenge_id,
            question=question,
            expires_in=int(services.challenges.ttl.total_seconds()),
        )

    @app.post("/v1/captcha/verify", response_model=ChallengeVerifyResponse)
    async def verify_challenge(request: ChallengeVerifyRequest) -> ChallengeVerifyResponse:
        result = await _run_blocking(services.challenges.verify, request.id, request.answer)
        if result is not ChallengeResult.SUCCESS:
            raise VerificationError(f"Challenge verification failed ({result.value})", reason=result.value)
        receipt = services.receipts.issue() if services.receipts is not None else None
        return ChallengeVerifyResponse(result=result.value, receipt=receipt)

    @app.post(
        "/v1/registrations",
        status_code=status.HTTP_201_CREATED,
        response_model=RegistrationResponse,
    )
    async def submit_registration(request: RegistrationRequest) -> RegistrationResponse:
        registration = await _run_blocking(
            services.workflow.submit,
            request.email,
            request.displayname,
            request.password,
            receipt=request.receipt,
            invite_token=request.invite,
        )
        return _registration_view(registration)


def register_operator_routes(
    app: FastAPI,
    services: OnboardingServices,
    *,
    operator: Callable[..., Any],
) -> None:
    """Endpoints that require an operator bearer token."""

    guard = [Depends(operator)]

    @app.get("/v1/admin/registrations", response_model=RegistrationListResponse, dependencies=guard)
    async def list_registrations() -> RegistrationListResponse:
        pending = await _run_blocking(services.workflow.list_pending)
        return RegistrationListResponse(registrations=[_registration_view(item) for item in pending])

    @app.post(
        "/v1/admin/registrations/{registration_id}/approve",
        response_model=UserResponse,
        dependencies=guard,
    )
    async def approve_registration(registration_id: str) -> UserResponse:
        user = await _run_blocking(services.workflow.approve, registration_id)
        return _user_view(user)

    @app.post(
        "/v1/admin/registrations/{registration_id}/reject",
        status_code=status.HTTP_204_NO_CONTENT,
        dependencies=guard,
    )
    async def reject_registration(registration_id: str) -> Response:
        await _run_blocking(services.workflow.reject, registration_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/v1/admin/invites", response_model=InviteListResponse, dependencies=guard)
    async def list_invites() -> InviteListResponse:
        invites = await _run_blocking(services.invites.list)
        return InviteListResponse(invites=[_invite_view(item) for item in invites])

    @app.post(
        "/v1/admin/invites",
        status_code=status.HTTP_201_CREATED,
        response_model=InviteResponse,
        dependencies=guard,
    )
    async def create_invite(request: InviteCreateRequest) -> InviteResponse:
        invite = await _run_blocking(
            services.invites.issue,
            request.email,
            request.expires_hours,
        )
        return _invite_view(invite)

    @app.delete(
        "/v1/admin/invites/{token}",
        status_code=status.HTTP_204_NO_CONTENT,
        dependencies=guard,
    )
    async def revoke_invite(token: str) -> Response:
        removed = await _run_blocking(services.invites.revoke, token)
        if not removed:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invite not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post(
        "/v1/admin/users/{user_id}/propagate",
        response_model=UserResponse,
        dependencies=guard,
    )
    async def propagate_user(user_id: str) -> UserResponse:
        user = await _run_blocking(services.workflow.propagate, user_id)
        return _user_view(user)

    @app.post(
        "/v1/admin/identity-provider/reload",
        status_code=status.HTTP_204_NO_CONTENT,
        dependencies=guard,
    )
    async def reload_identity_provider() -> Response:
        propagator = services.propagator
        if not isinstance(propagator, AutheliaUserFile):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="No identity provider users file is configured",
            )
        await _run_blocking(propagator.reload)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/v1/users", response_model=UserListResponse, dependencies=guard)
    async def list_users() -> UserListResponse:
        users = await _run_blocking(services.users.list)
        return UserListResponse(users=[_user_view(user) for user in users])

    @app.get("/v1/users/{user_id}", response_model=UserResponse, dependencies=guard)
    async def get_user(user_id: str) -> UserResponse:
        user = await _run_blocking(services.users.get, user_id)
        return _user_view(user)

    @app.put("/v1/users/{user_id}", response_model=UserResponse, dependencies=guard)
    async def update_user(user_id: str, request: UserUpdateRequest) -> UserResponse:
        user = await _run_blocking(
            services.users.update,
            user_id,
            username=request.username,
            email=request.email,
            role=request.role,
            status=request.status,
        )
        return _user_view(user)

    @app.delete(
        "/v1/users/{user_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        dependencies=guard,
    )
    async def delete_user(user_id: str) -> Response:
        await _run_blocking(services.users.delete, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/v1/users/{user_id}/vpn/enable", response_model=VpnEnableResponse, dependencies=guard)
    async def enable_vpn(user_id: str, request: Optional[VpnEnableRequest] = None) -> VpnEnableResponse:
        public_key = request.public_key if request is not None else None
        user, private_key = await _run_blocking(
            services.users.enable_vpn,
            user_id,
            public_key=public_key,
        )
        return VpnEnableResponse(user=_user_view(user), private_key=private_key)

    @app.post("/v1/users/{user_id}/vpn/disable", response_model=UserResponse, dependencies=guard)
    async def disable_vpn(user_id: str) -> UserResponse:
        user = await _run_blocking(services.users.disable_vpn, user_id)
        return _user_view(user)

    @app.post("/v1/vpn/issue", response_class=PlainTextResponse, dependencies=guard)
    async def issue_vpn_config() -> PlainTextResponse:
        config_text = await _run_blocking(services.vpn.issue)
        return PlainTextResponse(config_text)


# ----------------------------------------------------------------------
# Application factory
# ----------------------------------------------------------------------
def create_app(
    settings: Settings | None = None,
    *,
    services: OnboardingServices | None = None,
    propagator: CredentialPropagator | None = None,
    vpn_client: VpnProvisionerClient | None = None,
) -> FastAPI:
    """Return the onboarding API.

    The challenge reaper starts with the application lifespan and stops,
    writing a final snapshot, when the application shuts down.
    """

    if services is None:
        services = build_services(
            settings or load_settings(),
            propagator=propagator,
            vpn_client=vpn_client,
        )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        restored = await anyio.to_thread.run_sync(services.challenges.load)
        if restored:
            logger.info("Restored %d outstanding challenge(s)", restored)
        services.challenges.start()
        try:
            yield
        finally:
            await anyio.to_thread.run_sync(services.challenges.stop)

    app = FastAPI(
        title="Onboarding API",
        version="0.1.0",
        description="Self-service registration with operator approval.",
        lifespan=lifespan,
    )
    app.state.services = services

    register_error_handlers(app)
    register_public_routes(app, services)
    register_operator_routes(
        app,
        services,
        operator=OperatorAuth(services.settings.operator_tokens),
    )
    return app


__all__ = ["OnboardingServices", "build_services", "create_app"]
