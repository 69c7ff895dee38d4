"""SftpKit — command-line entry point.

Configures logging, builds a transfer from saved settings and runs a single
download or upload, printing progress to stderr.

Usage::

    python main.py download --host files.example.com --user alice /data/report.csv --digest 5d41...
    python main.py profile save work --host files.example.com --user alice --store-password
    python main.py upload --profile work ./report.csv /remote/dir
"""

from __future__ import annotations

import argparse
import getpass
import logging
import signal
import sys
from pathlib import Path

from sftpkit.config import (
    ConfigManager,
    delete_password,
    load_password,
    store_password,
)
from sftpkit.resolver import SSH_PORT
from sftpkit.session import AcceptAnyHostKey, SessionCredentials
from sftpkit.transfer import TransferState
from sftpkit.utils.path_helpers import human_readable_size

logger = logging.getLogger("sftpkit.cli")

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    if not verbose:
        # Quieten noisy third-party loggers
        logging.getLogger("paramiko").setLevel(logging.WARNING)
        logging.getLogger("sftpkit.transport").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sftpkit", description=__doc__.splitlines()[0])
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--config-dir", type=Path, default=None, help="settings directory")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_connection_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--host", default=None)
        p.add_argument("--user", default=None)
        p.add_argument("--port", type=int, default=None)
        p.add_argument("--profile", default=None, help="saved profile supplying host and user")
        p.add_argument("--password", default=None, help="falls back to keyring, then a prompt")
        p.add_argument("--accept-host-key", action="store_true", help="skip known_hosts verification")

    dl = sub.add_parser("download", help="download and verify one file")
    add_connection_args(dl)
    dl.add_argument("remote_path")
    dl.add_argument("--digest", required=True, help="expected lowercase hex digest")
    dl.add_argument("--staging-dir", type=Path, default=None)
    dl.add_argument("--final-dir", type=Path, default=None)

    ul = sub.add_parser("upload", help="upload one local file")
    add_connection_args(ul)
    ul.add_argument("local_file", type=Path)
    ul.add_argument("remote_dir")
    ul.add_argument("--name", default=None, help="remote filename (default: local name)")

    prof = sub.add_parser("profile", help="manage saved connection profiles")
    prof_sub = prof.add_subparsers(dest="action", required=True)
    save = prof_sub.add_parser("save")
    save.add_argument("name")
    save.add_argument("--host", required=True)
    save.add_argument("--user", required=True)
    save.add_argument("--port", type=int, default=SSH_PORT)
    save.add_argument("--store-password", action="store_true", help="prompt and save to keyring")
    delete = prof_sub.add_parser("delete")
    delete.add_argument("name")
    prof_sub.add_parser("list")
    return parser


def _resolve_password(host: str, user: str, explicit: str | None) -> str:
    if explicit is not None:
        return explicit
    stored = load_password(host, user)
    if stored:
        return stored
    return getpass.getpass(f"Password for {user}@{host}: ")


def _print_progress(done: int, total: int) -> None:
    sys.stderr.write(f"\r{human_readable_size(done)} / {human_readable_size(total)}")
    sys.stderr.flush()


def _connection_target(
    args: argparse.Namespace, config: ConfigManager
) -> tuple[str, str, int] | None:
    """Return ``(host, user, port)`` from --profile, overridden by --host/--user/--port."""
    host, user, port = args.host, args.user, args.port
    if args.profile:
        profile = config.get_profile(args.profile)
        if profile is None:
            logger.error("No such profile: %s", args.profile)
            return None
        host = host or profile["host"]
        user = user or profile["username"]
        port = port or profile["port"]
    if not host or not user:
        logger.error("A host and user are required (--host/--user or --profile)")
        return None
    return host, user, port or SSH_PORT


def _run_transfer(args: argparse.Namespace, config: ConfigManager) -> int:
    target = _connection_target(args, config)
    if target is None:
        return 2
    host, user, port = target
    credentials = SessionCredentials(
        hostname=host,
        username=user,
        password=_resolve_password(host, user, args.password),
        port=port,
    )
    outcome: dict[str, str | None] = {"failure": None}

    def on_success() -> None:
        logger.debug("%s succeeded", args.command)

    def on_failure(reason: str) -> None:
        outcome["failure"] = reason

    if args.command == "download":
        transfer = config.build_transfer(
            credentials, staging_dir=args.staging_dir, final_dir=args.final_dir
        )
    else:
        transfer = config.build_transfer(credentials)
    if args.accept_host_key:
        transfer.host_key_policy = AcceptAnyHostKey()

    state = TransferState()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: state.cancel())
    try:
        if args.command == "download":
            transfer.download(
                args.remote_path, args.digest, on_failure, on_success,
                on_progress=_print_progress, state=state,
            )
        else:
            transfer.upload_file(
                args.local_file, args.remote_dir, on_success, on_failure,
                remote_filename=args.name, on_progress=_print_progress, state=state,
            )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    sys.stderr.write("\n")
    if outcome["failure"]:
        logger.error("%s failed: %s", args.command, outcome["failure"])
        return 1
    logger.info("%s finished (%s)", args.command, human_readable_size(state.bytes_transferred))
    return 0


def _run_profile(args: argparse.Namespace, config: ConfigManager) -> int:
    if args.action == "list":
        for name in config.profile_names():
            profile = config.get_profile(name)
            print(f"{name}\t{profile['username']}@{profile['host']}:{profile['port']}")
        return 0

    if args.action == "save":
        try:
            config.save_profile(args.name, args.host, args.user, port=args.port)
        except ValueError as exc:
            logger.error("Cannot save profile %s: %s", args.name, exc)
            return 2
        if args.store_password:
            store_password(args.host, args.user, getpass.getpass("Password: "))
        return 0

    profile = config.get_profile(args.name)
    if profile is None or not config.delete_profile(args.name):
        logger.error("No such profile: %s", args.name)
        return 1
    delete_password(profile["host"], profile["username"])
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse *argv*, run the command, and return the process exit code."""
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    config = ConfigManager(base_dir=args.config_dir)

    if args.command == "profile":
        return _run_profile(args, config)
    return _run_transfer(args, config)


if __name__ == "__main__":
    sys.exit(main())
