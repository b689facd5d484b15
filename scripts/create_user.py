import argparse
import getpass
import sys
from pathlib import Path

import anyio

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from quotagate.config import load_config
from quotagate.errors import DuplicateEmailError, StoreError
from quotagate.ledger import QuotaLedger
from quotagate.security import CredentialManager
from quotagate.store import JsonFileStore

MIN_PASSWORD_LENGTH = 6


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a quotagate user")
    parser.add_argument("email", help="Unique email address for login")
    parser.add_argument("--name", default=None, help="Optional display name")
    parser.add_argument(
        "--data-dir",
        dest="data_dir",
        default=None,
        help="Directory holding users.json (defaults to QUOTAGATE_DATA_DIR or data/)",
    )
    return parser.parse_args()


def prompt_for_password() -> str:
    for _ in range(3):
        password = getpass.getpass("Password: ")
        confirm = getpass.getpass("Confirm password: ")
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        if len(password) < MIN_PASSWORD_LENGTH:
            print(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def main() -> int:
    args = parse_args()
    config = load_config()
    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else config.data_dir

    credentials = CredentialManager(signing_secret=config.jwt_secret, admin_secret=config.admin_password)
    store = JsonFileStore(data_dir, default_quota=config.default_quota)

    try:
        # Refuse before prompting when the service owns the directory.
        with store.exclusive():
            password = prompt_for_password()
            ledger = QuotaLedger(store)

            async def create():
                password_hash = await credentials.hash_password_async(password)
                return await ledger.create_user(email=args.email.strip(), password_hash=password_hash, name=args.name)

            user = anyio.run(create)
    except (StoreError, DuplicateEmailError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user {user.id}: {user.email} with quota {user.message_quota}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
