"""Command-line interface for the quotagate service."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

import anyio

from quotagate.config import ServiceConfig, load_config
from quotagate.errors import ConfigurationError, StoreError, StoreLockedError
from quotagate.ledger import QuotaLedger
from quotagate.store import JsonFileStore

logger = logging.getLogger("quotagate.main")

_KNOWN_COMMANDS = {"serve", "init-store", "list-users", "set-default-quota"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="quotagate credential and quota service")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (default: QUOTAGATE_CONFIG)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: QUOTAGATE_HOST or 0.0.0.0)")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port (default: QUOTAGATE_PORT or 3016)",
    )

    subparsers.add_parser("init-store", help="Create the data directory and settings document")
    subparsers.add_parser("list-users", help="Print registered users and their remaining quota")

    quota_parser = subparsers.add_parser(
        "set-default-quota", help="Change the quota granted to newly registered users"
    )
    quota_parser.add_argument("value", type=int, help="Non-negative number of messages")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        if args_list[0] in ("-h", "--help"):
            return parser.parse_args(args_list)
        # Global options come first; the subcommand defaults to "serve".
        index = 0
        while index < len(args_list) and args_list[index].startswith("--config"):
            index += 1 if "=" in args_list[index] else 2
        remaining = args_list[index:]
        if not remaining or remaining[0] not in _KNOWN_COMMANDS:
            if not any(flag in remaining for flag in ("-h", "--help")):
                args_list = [*args_list[:index], "serve", *remaining]

    return parser.parse_args(args_list)


def _store_for(config: ServiceConfig) -> JsonFileStore:
    return JsonFileStore(config.data_dir, default_quota=config.default_quota)


def _read_store(config: ServiceConfig) -> JsonFileStore:
    """Load a read-only view; safe while the service is running."""

    store = _store_for(config)
    store.load()
    return store


def _serve(config: ServiceConfig, *, host: str | None, port: int | None) -> None:
    from quotagate.service import create_app
    import uvicorn

    bind_host = host or config.host
    bind_port = port or config.port
    logger.info("Starting quota service on http://%s:%s", bind_host, bind_port)

    app = create_app(config)
    uvicorn.run(app, host=bind_host, port=bind_port, log_level=config.log_level.lower())


def _init_store(config: ServiceConfig) -> None:
    with _store_for(config).exclusive() as store:
        if not store.settings_path.exists():
            anyio.run(store.save_settings, store.settings)
    print(f"Store ready at {config.data_dir} (default quota {store.settings.default_quota}).")


def _list_users(config: ServiceConfig) -> None:
    ledger = QuotaLedger(_read_store(config))
    users = ledger.list_users()
    if not users:
        print("No users are currently registered.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':<36}  {'Email':<32}  {'Quota':>6}  Created")
    print("-" * 100)
    for user in users:
        created = user.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        print(f"{user.id:<36}  {user.email:<32}  {user.message_quota:>6}  {created}")


def _set_default_quota(config: ServiceConfig, value: int) -> int:
    if value < 0:
        print("The default quota must not be negative.", file=sys.stderr)
        return 1
    with _store_for(config).exclusive() as store:
        ledger = QuotaLedger(store)
        previous = ledger.get_settings().default_quota
        anyio.run(ledger.set_default_quota, value)
    print(f"Default quota changed from {previous} to {value}. Existing users keep their quota.")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    args = _parse_args(argv)

    try:
        config = load_config(config_path=Path(args.config) if args.config else None)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(level=config.log_level, format="%(asctime)s [%(levelname)s] %(message)s")

    try:
        if args.command == "serve":
            _serve(config, host=args.host, port=args.port)
        elif args.command == "init-store":
            _init_store(config)
        elif args.command == "list-users":
            _list_users(config)
        elif args.command == "set-default-quota":
            return _set_default_quota(config, args.value)
    except StoreLockedError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except StoreError as exc:
        logger.error("Store at %s is unusable: %s", config.data_dir, exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
