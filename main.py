"""Command-line interface for the onboarding service."""

from __future__ import annotations
import argparse
import logging
import sys
from getpass import getpass
from typing import Sequence

from onboard.config import Settings, load_settings
from onboard.credentials import CredentialIssuer
from onboard.errors import OnboardingError, UpstreamUnavailable
from onboard.records import (
    CHALLENGE_COLLECTION,
    INVITE_COLLECTION,
    PENDING_COLLECTION,
    USER_COLLECTION,
    RecordStore,
)

logger = logging.getLogger("onboard.main")

_MIN_PASSWORD_LENGTH = 12


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Onboarding service utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-data", help="Create empty collection files in the data directory")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP onboarding service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for the API (default: 8080)",
    )
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    subparsers.add_parser("pending", help="List registrations waiting for approval")
    subparsers.add_parser("users", help="List accepted users")

    approve_parser = subparsers.add_parser("approve", help="Approve a pending registration")
    approve_parser.add_argument("registration_id", help="Identifier of the pending registration")

    reject_parser = subparsers.add_parser("reject", help="Reject a pending registration")
    reject_parser.add_argument("registration_id", help="Identifier of the pending registration")

    invite_parser = subparsers.add_parser("invite", help="Issue a single-use invite token")
    invite_parser.add_argument(
        "--email",
        default=None,
        help="Only accept registrations from this address",
    )
    invite_parser.add_argument(
        "--hours",
        type=int,
        default=None,
        help="Lifetime of the invite in hours (default: ONBOARD_INVITE_TTL_HOURS or 72)",
    )

    subparsers.add_parser(
        "hash-password",
        help="Print an identity-provider password hash for a manually managed user",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {
        "serve",
        "init-data",
        "pending",
        "users",
        "approve",
        "reject",
        "invite",
        "hash-password",
    }

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_data(settings: Settings) -> RecordStore:
    records = RecordStore(settings.data_dir)
    records.ensure(PENDING_COLLECTION, INVITE_COLLECTION, USER_COLLECTION, CHALLENGE_COLLECTION)
    logger.info("Data directory initialised at %s", settings.data_dir)
    return records


def _serve(
    settings: Settings,
    *,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from onboard.service import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting onboarding API on %s://%s:%s", protocol, host, port)

    app = create_app(settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _list_pending(settings: Settings) -> None:
    from onboard.service import build_services

    pending = build_services(settings).workflow.list_pending()
    if not pending:
        print("No registrations are waiting for approval.")
        return

    print(f"{len(pending)} pending registration(s):")
    print(f"{'ID':<32}  {'Display name':<24}  {'Email':<32}  Submitted")
    print("-" * 110)
    for item in pending:
        submitted = item.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        invited = " (invited)" if item.invited else ""
        print(f"{item.id:<32}  {item.display_name or '-':<24}  {item.email:<32}  {submitted}{invited}")


def _list_users(settings: Settings) -> None:
    from onboard.service import build_services

    users = build_services(settings).users.list()
    if not users:
        print("No users have been approved yet.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':<32}  {'Username':<24}  {'Email':<32}  {'Status':<9}  VPN")
    print("-" * 110)
    for user in users:
        vpn = user.vpn.address if user.vpn_enabled and user.vpn else "-"
        print(f"{user.id:<32}  {user.username:<24}  {user.email:<32}  {user.status.value:<9}  {vpn}")


def _approve(settings: Settings, registration_id: str) -> None:
    from onboard.service import build_services

    workflow = build_services(settings).workflow
    try:
        user = workflow.approve(registration_id)
    except UpstreamUnavailable as exc:
        if exc.committed is None:
            raise
        print(
            f"Approved as user {exc.committed.id}, but the identity provider was not updated: {exc}",
            file=sys.stderr,
        )
        print(f"Retry later with the propagate endpoint for user {exc.committed.id}.", file=sys.stderr)
        raise SystemExit(2) from exc
    print(f"Approved registration {registration_id} as user {user.id} ({user.username} <{user.email}>)")


def _reject(settings: Settings, registration_id: str) -> None:
    from onboard.service import build_services

    build_services(settings).workflow.reject(registration_id)
    print(f"Rejected registration {registration_id}")


def _issue_invite(settings: Settings, *, email: str | None, hours: int | None) -> None:
    from onboard.service import build_services

    invite = build_services(settings).invites.issue(email, hours)
    print(invite.token)
    bound = f" for {invite.email}" if invite.email else ""
    print(f"Invite{bound} expires at {invite.expires_at.isoformat()}", file=sys.stderr)


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass(f"Password (min {_MIN_PASSWORD_LENGTH} characters): ")
        if len(password) < _MIN_PASSWORD_LENGTH:
            print("Password is too short. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _hash_password(settings: Settings) -> None:
    password = _prompt_for_password()
    if password is None:
        raise SystemExit("Failed to read a password after three attempts.")
    issuer = CredentialIssuer(internal=settings.internal_kdf, provider=settings.provider_kdf)
    print(issuer.hash_for_provider(password))


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    try:
        settings = load_settings()
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    if args.command == "hash-password":
        _hash_password(settings)
        return

    _initialise_data(settings)

    try:
        if args.command == "serve":
            _serve(
                settings,
                host=args.host,
                port=args.port,
                ssl_certfile=args.ssl_certfile,
                ssl_keyfile=args.ssl_keyfile,
            )
        elif args.command == "pending":
            _list_pending(settings)
        elif args.command == "users":
            _list_users(settings)
        elif args.command == "approve":
            _approve(settings, args.registration_id)
        elif args.command == "reject":
            _reject(settings, args.registration_id)
        elif args.command == "invite":
            _issue_invite(settings, email=args.email, hours=args.hours)
        elif args.command == "init-data":
            print("Data directory initialisation complete.")
    except (OnboardingError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
