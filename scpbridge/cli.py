"""Command-line interface for ScpBridge.

Usage::

    scpbridge --host build01 --user deploy push ./dist /srv/app/dist -p
    scpbridge --profile build01 pull /var/log/app.log ./logs/
    scpbridge --profile build01 exec uname -a
    scpbridge --host build01.lan --user deploy profile save build01
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from pathlib import Path

import paramiko

from scpbridge.config import ConfigManager
from scpbridge.connection import ConnectionError as NotConnectedError
from scpbridge.connection import SSHConnection, UnknownHostError
from scpbridge.protocol import SCPError
from scpbridge.session import RemoteCommandError, SessionError
from scpbridge.transfer import SCPClient, TransferJob
from scpbridge.utils.path_helpers import human_readable_size

logger = logging.getLogger(__name__)

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
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def create_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="scpbridge",
        description="Copy files to and from a remote host with the scp protocol.",
    )
    parser.add_argument("--config-dir", type=Path, default=None,
                        help="settings directory (default: ~/.scpbridge)")
    parser.add_argument("--profile", help="saved connection profile to use")
    parser.add_argument("--host", help="remote host name or address")
    parser.add_argument("--port", type=int, help="SSH port")
    parser.add_argument("--user", help="SSH user name")
    parser.add_argument("--key", dest="key_path", help="private key file")
    parser.add_argument("--ask-pass", action="store_true",
                        help="prompt for a password instead of using keys/keyring")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    push = sub.add_parser("push", help="send a local file or directory")
    push.add_argument("source")
    push.add_argument("dest")
    push.add_argument("-p", "--preserve", action="store_true", default=None,
                      help="preserve modification and access times")
    push.set_defaults(func=cmd_push)

    pull = sub.add_parser("pull", help="fetch a remote file or directory")
    pull.add_argument("source")
    pull.add_argument("dest")
    pull.set_defaults(func=cmd_pull)

    run = sub.add_parser("exec", help="run a remote command")
    run.add_argument("remote_command", nargs=argparse.REMAINDER)
    run.set_defaults(func=cmd_exec)

    profile = sub.add_parser("profile", help="manage saved connection profiles")
    profile_sub = profile.add_subparsers(dest="action", required=True)
    save = profile_sub.add_parser("save", help="save --host/--port/--user/--key as NAME")
    save.add_argument("name")
    save.set_defaults(func=cmd_profile_save)
    remove = profile_sub.add_parser("delete", help="delete profile NAME")
    remove.add_argument("name")
    remove.set_defaults(func=cmd_profile_delete)
    listing = profile_sub.add_parser("list", help="list saved profiles")
    listing.set_defaults(func=cmd_profile_list)

    return parser


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _cli_profile(args: argparse.Namespace) -> dict:
    """Collect connection settings given on the command line."""
    return {
        "host": args.host,
        "port": args.port,
        "username": args.user,
        "key_path": args.key_path,
    }


def build_connection(args: argparse.Namespace, config: ConfigManager) -> SSHConnection:
    """Merge the selected profile with command-line overrides.

    Raises:
        ValueError: Unknown profile or no host given.
    """
    profile: dict = {}
    if args.profile:
        stored = config.get_profile(args.profile)
        if stored is None:
            raise ValueError(f"Unknown profile: {args.profile}")
        profile.update(stored)
    profile.update({k: v for k, v in _cli_profile(args).items() if v})
    if not profile.get("host"):
        raise ValueError("No host given (use --host or --profile)")

    kwargs = config.connection_kwargs(profile)
    if args.ask_pass:
        user = kwargs.get("username", "root")
        kwargs["password"] = getpass.getpass(f"{user}@{kwargs['host']} password: ")
    return SSHConnection(**kwargs)


def _report(job: TransferJob) -> None:
    print(
        f"{job.direction.name.lower()} {job.source} → {job.destination}: "
        f"{job.files} file(s), {human_readable_size(job.bytes_transferred)} "
        f"in {job.elapsed:.1f}s"
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_push(args: argparse.Namespace, config: ConfigManager) -> None:
    preserve = args.preserve if args.preserve is not None else bool(config.get("preserve_times"))
    with build_connection(args, config) as conn:
        client = SCPClient.from_config(conn, config)
        _report(client.push(args.source, args.dest, preserve=preserve))


def cmd_pull(args: argparse.Namespace, config: ConfigManager) -> None:
    with build_connection(args, config) as conn:
        client = SCPClient.from_config(conn, config)
        _report(client.receive(args.source, args.dest))


def cmd_exec(args: argparse.Namespace, config: ConfigManager) -> None:
    if not args.remote_command:
        raise ValueError("No command given")
    with build_connection(args, config) as conn:
        try:
            stdout, stderr = conn.run_command(" ".join(args.remote_command))
        except RemoteCommandError as exc:
            sys.stdout.write(exc.stdout)
            sys.stderr.write(exc.stderr)
            raise
    sys.stdout.write(stdout)
    sys.stderr.write(stderr)


def cmd_profile_save(args: argparse.Namespace, config: ConfigManager) -> None:
    profile = {k: v for k, v in _cli_profile(args).items() if v}
    profile["name"] = args.name
    config.save_profile(profile)


def cmd_profile_delete(args: argparse.Namespace, config: ConfigManager) -> None:
    if not config.delete_profile(args.name):
        raise ValueError(f"Unknown profile: {args.name}")


def cmd_profile_list(args: argparse.Namespace, config: ConfigManager) -> None:
    for profile in config.get_profiles():
        user = profile.get("username", "")
        port = profile.get("port", 22)
        print(f"{profile['name']}\t{user + '@' if user else ''}{profile.get('host')}:{port}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Parse *argv*, run the selected subcommand and return the exit status."""
    parser = create_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = ConfigManager(base_dir=args.config_dir)
        args.func(args, config)
    except UnknownHostError as exc:
        logger.error("%s", exc)
        return 1
    except (SCPError, RemoteCommandError, SessionError, NotConnectedError) as exc:
        logger.error("Transfer failed: %s", exc)
        return 1
    except paramiko.AuthenticationException as exc:
        logger.error("Authentication failed: %s", exc)
        return 1
    except (ValueError, OSError, paramiko.SSHException) as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    return 0
