import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from onboard.invites import DEFAULT_INVITE_TTL_HOURS, InviteTokenManager
from onboard.records import INVITE_COLLECTION, CollectionLocks, RecordStore, resolve_data_dir


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue a single-use onboarding invite")
    parser.add_argument(
        "--email",
        default=None,
        help="Restrict the invite to registrations from this address",
    )
    parser.add_argument(
        "--hours",
        type=int,
        default=DEFAULT_INVITE_TTL_HOURS,
        help=f"Hours until the invite expires (default: {DEFAULT_INVITE_TTL_HOURS})",
    )
    parser.add_argument(
        "--data-dir",
        dest="data_dir",
        default=None,
        help="Directory holding the JSON collections (defaults to ONBOARD_DATA_DIR or data/)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.hours <= 0:
        print("Error: --hours must be positive", file=sys.stderr)
        return 1

    data_dir = resolve_data_dir(args.data_dir or os.getenv("ONBOARD_DATA_DIR"))
    records = RecordStore(data_dir)
    records.ensure(INVITE_COLLECTION)

    manager = InviteTokenManager(records, CollectionLocks())
    invite = manager.issue(args.email, args.hours)

    print(invite.token)
    if invite.email:
        print(f"Bound to {invite.email}", file=sys.stderr)
    print(f"Expires at {invite.expires_at.isoformat()}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
