from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import HubRuntimeConfig, apply_config_data, load_toml
from .constants import CLIENT_DESKTOP, CLIENT_TYPES, ROLE_ADMIN, ROLE_USER, ROOM_TEXT, ROOM_TYPES
from .identity import IdentityResolver
from .logging_config import configure_logging
from .models import User
from .paths import (
    default_config_path,
    default_identity_path,
    default_store_path,
    ensure_private_dir,
)
from .service import HubService
from .sqlite_store import SqliteStore
from .transport import RNSTransport, load_identity
from .util import normalize_username


def _write_default_config(config_path: str, identity_path: str, store_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# chathub configuration (TOML)
#
# This file was created on first run.
# Edit it, then start chathubd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Hub identity (Reticulum Identity file). It also signs login tokens.
identity_path = {identity_path!r}

# SQLite directory store (users, rooms, messages, moderation).
store_path = {store_path!r}

# Destination name to host the hub on.
dest_name = "chathub.hub"

# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = "chathub"
greeting = ""

# Room joined after login. Empty means the first room by position.
default_room = ""

# Messages replayed on join or room switch.
history_limit = 50
max_message_chars = 2000
username_max_chars = 32

# Lifetime of tokens minted with --issue-token.
token_ttl_s = 86400.0

# Close connections that have not sent HELLO within this many seconds (0 disables).
hello_timeout_s = 30.0

# Re-check online users for bans issued outside the hub (0 disables).
ban_sweep_interval_s = 60.0

rate_limit_msgs_per_minute = 240

# Hub-initiated liveness checks (0 disables).
ping_interval_s = 0.0
ping_timeout_s = 0.0

# Largest payload accepted or sent as an RNS.Resource.
max_resource_bytes = 262144

[logging]

level = "INFO"

# Level for Reticulum and other library loggers.
rns_level = "WARNING"

console = true

# Optional file path for logs (leave empty to disable).
file = ""

format = "%(asctime)s %(levelname)s %(name)s: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str, store_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, store_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chathubd", description="Run a chathub daemon")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument("--store", default=None, help="Path to the SQLite directory store")
    p.add_argument("--dest-name", default=None, help="Destination app name (default: chathub.hub)")

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in WELCOME")
    p.add_argument("--greeting", default=None, help="Greeting sent in WELCOME")
    p.add_argument("--default-room", default=None, help="Room joined after login")
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-connection message rate limit",
    )
    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
    )

    admin = p.add_argument_group("directory administration")
    admin.add_argument("--add-user", metavar="USER", default=None, help="Add a user and exit")
    admin.add_argument("--display-name", default=None, help="Display name for --add-user")
    admin.add_argument("--color", default="#000000", help="Chat color for --add-user")
    admin.add_argument("--admin", action="store_true", help="Give --add-user the admin role")
    admin.add_argument("--add-room", metavar="NAME", default=None, help="Add a room and exit")
    admin.add_argument(
        "--room-type", choices=ROOM_TYPES, default=ROOM_TEXT, help="Type for --add-room"
    )
    admin.add_argument("--position", type=int, default=0, help="Position for --add-room")
    admin.add_argument(
        "--issue-token",
        metavar="USER",
        default=None,
        help="Print a signed login token for USER and exit",
    )
    admin.add_argument(
        "--client", choices=CLIENT_TYPES, default=CLIENT_DESKTOP, help="Client type claim"
    )
    admin.add_argument("--token-ttl", type=float, default=None, help="Token lifetime seconds")

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )
    return p


def _apply_args(cfg: HubRuntimeConfig, args: argparse.Namespace) -> HubRuntimeConfig:
    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.store is not None:
        cfg = replace(cfg, store_path=args.store)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)
    if args.greeting is not None:
        cfg = replace(cfg, greeting=args.greeting or None)
    if args.default_room is not None:
        cfg = replace(cfg, default_room=args.default_room or None)
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute))
    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) or None)
    return cfg


async def _add_user(cfg: HubRuntimeConfig, args: argparse.Namespace) -> str:
    username = normalize_username(args.add_user, max_chars=cfg.username_max_chars)
    if username is None:
        raise SystemExit(f"invalid username {args.add_user!r}")
    store = SqliteStore(cfg.store_path)
    await store.open()
    try:
        user = await store.add_user(
            User(
                username=username,
                display_name=args.display_name,
                color=args.color,
                role=ROLE_ADMIN if args.admin else ROLE_USER,
            )
        )
    finally:
        await store.close()
    return f"added user {user.username} role={user.role}"


async def _add_room(cfg: HubRuntimeConfig, args: argparse.Namespace) -> str:
    store = SqliteStore(cfg.store_path)
    await store.open()
    try:
        room = await store.create_room(args.add_room, type=args.room_type, position=args.position)
    finally:
        await store.close()
    return f"added room {room.name} id={room.id} type={room.type}"


async def _issue_token(cfg: HubRuntimeConfig, args: argparse.Namespace) -> str:
    identity = load_identity(cfg.identity_path)
    store = SqliteStore(cfg.store_path)
    await store.open()
    try:
        user = await store.find_user_by_name(args.issue_token)
    finally:
        await store.close()
    if user is None:
        raise SystemExit(f"unknown user {args.issue_token!r}")
    resolver = IdentityResolver(store, identity, cfg)
    return resolver.issue_token(user, ttl_s=args.token_ttl, client=args.client)


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    store_path = str(args.store) if args.store else str(default_store_path())

    if _ensure_first_run_files(config_path, identity_path, store_path):
        print(
            "Created default chathub files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run chathubd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = HubRuntimeConfig(
        config_path=config_path,
        identity_path=identity_path,
        store_path=store_path,
    )
    cfg = apply_config_data(cfg, load_toml(config_path))
    cfg = _apply_args(cfg, args)
    if not cfg.store_path:
        cfg = replace(cfg, store_path=store_path)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    if args.add_user is not None:
        print(asyncio.run(_add_user(cfg, args)))
        return
    if args.add_room is not None:
        print(asyncio.run(_add_room(cfg, args)))
        return
    if args.issue_token is not None:
        print(asyncio.run(_issue_token(cfg, args)))
        return

    if not cfg.identity_path:
        raise SystemExit("identity_path is not set")
    identity = load_identity(cfg.identity_path)
    svc = HubService(cfg, signer=identity, transport=RNSTransport(cfg, identity))
    asyncio.run(svc.run_forever())


if __name__ == "__main__":
    main()
