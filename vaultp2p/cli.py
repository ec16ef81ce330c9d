from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace
from pathlib import Path

from .config import VaultConfig, apply_config_data, load_toml
from .errors import ErrorKind, VaultError
from .events import ErrorEvent, EventKind, FileComplete, IncomingMetadata, Progress
from .invite import parse_invite
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_download_dir,
    default_identity_cache_path,
    default_rns_identity_dir,
    ensure_private_dir,
)
from .rns_transport import RnsEndpoint
from .session import VaultSession

log = logging.getLogger("vaultp2p.cli")


def _write_default_config(config_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# vaultp2p configuration (TOML)
#
# This file was created on first run.

[session]

# Where received files are written.
download_dir = {str(default_download_dir())!r}

# Room identity and key of the last hosted room (used by `vaultp2p host --resume`).
identity_cache_path = {str(default_identity_cache_path())!r}

# Base URL for invite links. The room key travels in the URL fragment.
invite_base_url = "https://vault.invalid/"

# Maximum number of joiners per hosted room (0 means unlimited).
capacity = 0

# Device class announced to peers (desktop, laptop, mobile, tablet, ...).
device_class = "desktop"

# Plaintext slice size for file transfers, in bytes.
chunk_size = 16384

# Connection establishment: direct attempt watchdog, then one relay-only attempt
# until the total budget is spent.
direct_timeout_s = 7.0
total_timeout_s = 25.0

# Keep-alive interval (0 disables) and optional silence timeout (0 disables).
keepalive_interval_s = 2.0
keepalive_timeout_s = 0.0

# Joiner reconnect after losing the host.
reconnect_delay_s = 2.0
reconnect_attempts = 5
reconnect_max_delay_s = 30.0

# Reticulum.
# If rns_configdir is left unset, Reticulum chooses its default (usually ~/.reticulum).
rns_configdir = ""
rns_identity_dir = {str(default_rns_identity_dir())!r}
rns_dest_name = "vaultp2p.room"
rns_announce_period_s = 300.0
rns_path_timeout_s = 15.0

[logging]

# Log level for vaultp2p itself.
level = "INFO"

# Log level handed to Reticulum itself (and the adapter logger).
rns_level = "WARNING"

# Log to stderr.
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass


def unique_path(directory: str, name: str) -> str:
    """``directory/name``, with a numeric suffix if that file already exists."""
    base, ext = os.path.splitext(name)
    candidate = os.path.join(directory, name)
    n = 1
    while os.path.exists(candidate):
        candidate = os.path.join(directory, f"{base} ({n}){ext}")
        n += 1
    return candidate


def save_received(download_dir: str, done: FileComplete) -> str:
    ensure_private_dir(Path(download_dir))
    path = unique_path(download_dir, done.name)
    with open(path, "wb") as f:
        f.write(done.data)
    return path


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="vaultp2p", description="End-to-end encrypted peer-to-peer file rooms"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument("--device", default=None, help="Device class announced to peers")
    p.add_argument(
        "--download-dir", default=None, help="Directory for received files"
    )
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

    sub = p.add_subparsers(dest="command", required=True)

    host = sub.add_parser("host", help="Open a room and print its invite link")
    host.add_argument(
        "--capacity", type=int, default=None, help="Maximum number of joiners"
    )
    host.add_argument(
        "--resume",
        action="store_true",
        help="Reuse the identity and key of the last hosted room",
    )
    host.add_argument(
        "--send", nargs="*", default=(), metavar="FILE", help="Files to send"
    )

    join = sub.add_parser("join", help="Join a room from an invite link")
    join.add_argument("invite", help="Invite link (room identity and key)")
    join.add_argument(
        "--send", nargs="*", default=(), metavar="FILE", help="Files to send"
    )

    return p


def _build_config(args: argparse.Namespace) -> VaultConfig:
    config_path = str(args.config)
    if config_path and not os.path.exists(config_path):
        _write_default_config(config_path)
        print(f"Created default vaultp2p config: {config_path}", file=sys.stderr)

    cfg = VaultConfig(config_path=config_path)
    if config_path:
        cfg = apply_config_data(cfg, load_toml(config_path))

    if cfg.identity_cache_path is None:
        cfg = replace(cfg, identity_cache_path=str(default_identity_cache_path()))
    if cfg.download_dir is None:
        cfg = replace(cfg, download_dir=str(default_download_dir()))

    if args.configdir is not None:
        cfg = replace(cfg, rns_configdir=args.configdir or None)
    if args.device is not None:
        cfg = replace(cfg, device_class=str(args.device))
    if args.download_dir is not None:
        cfg = replace(cfg, download_dir=str(args.download_dir))
    if getattr(args, "capacity", None) is not None:
        cfg = replace(cfg, capacity=int(args.capacity) or None)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)
    return cfg


def _wire_output(session: VaultSession, cfg: VaultConfig, stop: asyncio.Event) -> None:
    def _on_metadata(ev: IncomingMetadata) -> None:
        print(
            f"<- {ev.info.name} ({ev.info.size} bytes) from {ev.sender}",
            file=sys.stderr,
        )

    def _on_progress(ev: Progress) -> None:
        if ev.current >= ev.total:
            verb = "sent" if ev.direction == "send" else "received"
            log.info("%s %s %s/%s", verb, ev.name, ev.current, ev.total)

    def _on_complete(ev: FileComplete) -> None:
        path = save_received(cfg.download_dir, ev)
        print(f"Saved {path}", file=sys.stderr)

    def _on_error(ev: ErrorEvent) -> None:
        print(f"Error [{ev.error.value}] {ev.message}", file=sys.stderr)
        if ev.fatal or ev.error == ErrorKind.CAPACITY_EXCEEDED:
            stop.set()

    session.subscribe(EventKind.INCOMING_METADATA, _on_metadata)
    session.subscribe(EventKind.PROGRESS, _on_progress)
    session.subscribe(EventKind.FILE_COMPLETE, _on_complete)
    session.subscribe(EventKind.ERROR, _on_error)
    session.subscribe(
        EventKind.ROSTER_CHANGED,
        lambda ev: log.info(
            "Roster: %s",
            ", ".join(f"{p.identity}({p.device})" for p in ev.roster) or "-",
        ),
    )
    session.subscribe(
        EventKind.TRANSPORT_CLASS_DETECTED,
        lambda ev: log.info("Transport: %s", ev.label),
    )


async def _send_all(session: VaultSession, files: list[str]) -> None:
    for path in files:
        try:
            meta = await session.send_file(path)
        except (OSError, ValueError, VaultError) as e:
            print(f"Could not send {path}: {e}", file=sys.stderr)
            continue
        print(f"-> {meta.name} ({meta.size} bytes)", file=sys.stderr)


async def _run(args: argparse.Namespace, cfg: VaultConfig) -> int:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    endpoint = RnsEndpoint(cfg, persist_identity=args.command == "host")
    session = VaultSession(cfg, signaling=endpoint, transport=endpoint)
    _wire_output(session, cfg, stop)

    rc = 0
    try:
        if args.command == "host":
            await session.start_as_initiator(
                cfg.capacity, cfg.device_class, resume=bool(args.resume)
            )
            print(session.invite_link())
        else:
            invite = parse_invite(args.invite)
            await session.join_room(
                invite.room_identity, invite.key_material, cfg.device_class
            )
            print(f"Joined room {invite.room_identity}", file=sys.stderr)

        sender = loop.create_task(_send_all(session, list(args.send or ())))
        await stop.wait()
        sender.cancel()
    except (ValueError, VaultError) as e:
        print(f"vaultp2p: {e}", file=sys.stderr)
        rc = 1
    finally:
        print(session.stats_manager.format_stats(), file=sys.stderr)
        session.destroy()
    return rc


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)
    cfg = _build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    raise SystemExit(asyncio.run(_run(args, cfg)))


if __name__ == "__main__":
    main()
