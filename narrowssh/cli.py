"""
narrowssh command line.

Usage:
    # Issue a generated key that may only run rsync in server mode
    narrowssh issue --generate ed25519 --label backup \
        --private-key-out backup_key -- /usr/bin/rsync --server --sender .

    # Issue for an existing public key, reachable from one subnet, for 1 week
    narrowssh issue --public-key deploy.pub --from 10.0.0.0/8 --valid-for 1w \
        --command "/opt/deploy/run.sh"

    narrowssh list
    narrowssh revoke 3f2a...
    narrowssh renew 3f2a... --valid-for 30d
    narrowssh reconcile              # alias: refresh
    narrowssh sweep                  # drop expired keys from the file
    narrowssh prune --retention 90d
    narrowssh uninstall              # remove the managed section

    # As root, for every user enabled in /etc/narrowssh/control.yaml
    narrowssh --all-users reconcile

Exit codes:
    0  success
    1  error
    2  some keys could not be rendered (the others were installed)
    75 a lock is held by another narrowssh process; retry later
"""

from __future__ import annotations
import argparse, json, os, pwd, re, sys
from datetime import timedelta
from typing import List, Optional

from . import __version__
from .config import Control, ControlManager
from .crypto import DEFAULT_ALGORITHM, SUPPORTED_ALGORITHMS
from .errors import ConfigError, LockBusy, NarrowSSHError
from .logger import get_logger
from .manager import KeyManager, ReconcileReport
from .models import Restrictions
from .paths import Owner, acting_as
from .policy import command_from_argv
from .registry import DEFAULT_RETENTION
from .utils import format_ts, parse_ts, utcnow

log = get_logger("narrowssh.cli")

EX_OK = 0
EX_ERROR = 1
EX_PARTIAL = 2
EX_TEMPFAIL = 75

_DURATION = re.compile(r"^(\d+)([smhdwMy])$")
_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
    "M": 4 * 7 * 86400,   # months -> weeks (approximate: 1M = 4w)
    "y": 52 * 7 * 86400,  # years -> weeks (1y = 52w)
}


def parse_duration(value: str) -> timedelta:
    """Parse shortcuts like 30s, 15m, 12h, 7d, 2w, 6M, 1y."""
    match = _DURATION.match(value.strip())
    if not match:
        raise argparse.ArgumentTypeError(f"invalid duration {value!r} (examples: 12h, 7d, 2w, 6M, 1y)")
    return timedelta(seconds=int(match.group(1)) * _UNIT_SECONDS[match.group(2)])


def parse_timestamp(value: str) -> str:
    try:
        parsed = parse_ts(value)
        if parsed is None:
            raise ValueError(value)
        return format_ts(parsed)
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError(f"invalid timestamp {value!r} (expected YYYY-MM-DDTHH:MM:SSZ)") from None


def _create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="narrowssh",
        description="Manage command-restricted SSH keys in a managed authorized_keys section.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    who = parser.add_mutually_exclusive_group()
    who.add_argument("-u", "--user", help="affect this user instead of the running user")
    who.add_argument("--uid", type=int, help="affect the user with this uid")
    who.add_argument("-a", "--all-users", action="store_true",
                     help="affect every user enabled in the control file")

    parser.add_argument("--control", help="control file (default: $NARROWSSH_CONTROL or /etc/narrowssh/control.yaml)")
    parser.add_argument("--authorized-keys", help="authorized_keys file to manage")
    parser.add_argument("--registry", help="registry database path")
    parser.add_argument("--lock-timeout", type=float, help="seconds to wait for a busy lock")
    parser.add_argument("-v", "--verbose", action="count", default=0)

    sub = parser.add_subparsers(dest="command", required=True)

    issue = sub.add_parser("issue", help="issue a key restricted to one command")
    source = issue.add_mutually_exclusive_group(required=True)
    source.add_argument("--public-key", metavar="FILE", help="public key file ('-' for stdin)")
    source.add_argument("--generate", metavar="ALG", nargs="?", const=DEFAULT_ALGORITHM,
                        choices=SUPPORTED_ALGORITHMS, help="generate a keypair (default ed25519)")
    issue.add_argument("--command", dest="forced_command", help="forced command string")
    issue.add_argument("--label", default="", help="free-text note stored with the key")
    issue.add_argument("--from", dest="source_addresses", action="append", default=[],
                       metavar="PATTERN", help="allowed source address pattern (repeatable)")
    expiry = issue.add_mutually_exclusive_group()
    expiry.add_argument("--expires", type=parse_timestamp, metavar="TS")
    expiry.add_argument("--valid-for", type=parse_duration, metavar="DURATION")
    for flag in ("pty", "port-forwarding", "x11-forwarding", "agent-forwarding", "user-rc"):
        issue.add_argument(f"--allow-{flag}", action="store_true")
    issue.add_argument("--private-key-out", metavar="FILE",
                       help="write the generated private key here (0600) instead of stdout")
    issue.add_argument("argv", nargs=argparse.REMAINDER,
                       help="forced command as an argument vector (after --)")

    revoke = sub.add_parser("revoke", help="revoke a key")
    revoke.add_argument("key_id")

    renew = sub.add_parser("renew", help="change the expiry of an active key")
    renew.add_argument("key_id")
    when = renew.add_mutually_exclusive_group(required=True)
    when.add_argument("--expires", type=parse_timestamp, metavar="TS")
    when.add_argument("--valid-for", type=parse_duration, metavar="DURATION")
    when.add_argument("--no-expiry", action="store_true")

    lst = sub.add_parser("list", help="list registry keys")
    lst.add_argument("--all", action="store_true", help="include revoked and expired keys")
    lst.add_argument("--json", action="store_true")

    sub.add_parser("reconcile", aliases=["refresh"], help="rewrite the managed section")
    sub.add_parser("sweep", help="record expired keys and drop them from the file")

    prune = sub.add_parser("prune", help="delete old revoked/expired records")
    prune.add_argument("--retention", type=parse_duration, default=DEFAULT_RETENTION,
                       help="keep records that ended more recently than this (default 30d)")

    sub.add_parser("uninstall", help="remove the managed section from authorized_keys")
    return parser


# ----------------------------------------------------------------------
# User selection
# ----------------------------------------------------------------------
def resolve_users(args, controls: ControlManager) -> List[pwd.struct_passwd]:
    if args.user:
        try:
            return [pwd.getpwnam(args.user)]
        except KeyError:
            raise ConfigError(f"no such user {args.user!r}") from None
    if args.uid is not None:
        try:
            return [pwd.getpwuid(args.uid)]
        except KeyError:
            raise ConfigError(f"no such uid {args.uid}") from None
    if args.all_users:
        users = [u for u in pwd.getpwall() if controls.get_user_control(u.pw_uid).enable]
        if not users:
            raise ConfigError("all users are disabled in the control file")
        return sorted(users, key=lambda u: u.pw_uid)
    try:
        return [pwd.getpwuid(os.getuid())]
    except KeyError:
        raise ConfigError(f"running uid {os.getuid()} has no passwd entry") from None


def _owner_for(user: pwd.struct_passwd) -> Optional[Owner]:
    if os.geteuid() == 0 and user.pw_uid != 0:
        return user.pw_uid, user.pw_gid
    return None


def _manager_for(args, user: pwd.struct_passwd, controls: ControlManager) -> KeyManager:
    control: Control = controls.get_user_control(user.pw_uid).resolve(user.pw_dir)
    owner = _owner_for(user)
    lock_timeout = args.lock_timeout if args.lock_timeout is not None else control.lock_timeout
    return KeyManager(
        authorized_keys=args.authorized_keys or control.authorized_keys,
        registry_path=args.registry or control.registry,
        lock_timeout=lock_timeout,
        owner=owner,
    )


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
def _print_report(report: ReconcileReport) -> int:
    state = "updated" if report.changed else "unchanged"
    print(f"{report.path}: {state}, {len(report.installed)} managed key(s)")
    for key_id, reason in report.failures.items():
        print(f"  skipped {key_id}: {reason}", file=sys.stderr)
    return EX_OK if report.ok else EX_PARTIAL


def _expiry(args) -> Optional[str]:
    if getattr(args, "valid_for", None) is not None:
        return format_ts(utcnow() + args.valid_for)
    return getattr(args, "expires", None)


def _read_public_key(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(os.path.expanduser(path), "r", encoding="utf-8") as fh:
        return fh.read()


def _write_private_key(path: str, pem: str) -> None:
    fd = os.open(os.path.expanduser(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as fh:
        fh.write(pem)


def cmd_issue(args, mgr: KeyManager) -> int:
    argv = args.argv[1:] if args.argv[:1] == ["--"] else args.argv
    if bool(args.forced_command) == bool(argv):
        raise ConfigError("give the forced command either with --command or after --, not both")
    command = args.forced_command or command_from_argv(argv)

    restrictions = Restrictions(
        no_pty=not args.allow_pty,
        no_port_forwarding=not args.allow_port_forwarding,
        no_x11_forwarding=not args.allow_x11_forwarding,
        no_agent_forwarding=not args.allow_agent_forwarding,
        no_user_rc=not args.allow_user_rc,
        source_addresses=tuple(args.source_addresses),
        expires_at=_expiry(args),
    )
    public_key = _read_public_key(args.public_key) if args.public_key else None
    result = mgr.issue(command, public_key=public_key, restrictions=restrictions,
                       label=args.label, algorithm=args.generate or DEFAULT_ALGORITHM)

    print(f"issued {result.key.key_id}")
    if result.private_key is not None:
        if args.private_key_out:
            _write_private_key(args.private_key_out, result.private_key)
            print(f"private key written to {args.private_key_out}")
        else:
            sys.stdout.write(result.private_key)
    return _print_report(result.report)


def cmd_revoke(args, mgr: KeyManager) -> int:
    report = mgr.revoke(args.key_id)
    print(f"revoked {args.key_id}")
    return _print_report(report)


def cmd_renew(args, mgr: KeyManager) -> int:
    key, report = mgr.renew(args.key_id, None if args.no_expiry else _expiry(args))
    print(f"renewed {key.key_id} until {key.expires_at or 'forever'}")
    return _print_report(report)


def cmd_list(args, mgr: KeyManager) -> int:
    now = utcnow()
    installed = set(mgr.installed_ids())
    rows = []
    for key in mgr.list_keys():
        d = key.to_dict(now)
        if not args.all and d["state"] != "active":
            continue
        d["installed"] = key.key_id in installed
        rows.append(d)
    if args.json:
        print(json.dumps(rows, indent=2, sort_keys=True))
        return EX_OK
    for d in rows:
        mark = "*" if d["installed"] else " "
        expires = d["restrictions"]["expires_at"] or "-"
        print(f"{mark} {d['key_id']}  {d['state']:<8} {d['created_at']}  expires={expires}  {d['command']}")
    return EX_OK


def cmd_reconcile(args, mgr: KeyManager) -> int:
    return _print_report(mgr.reconcile())


def cmd_sweep(args, mgr: KeyManager) -> int:
    expired, report = mgr.sweep()
    for key in expired:
        print(f"expired {key.key_id} at {key.expires_at}")
    return _print_report(report)


def cmd_prune(args, mgr: KeyManager) -> int:
    print(f"pruned {mgr.prune(args.retention)} record(s)")
    return EX_OK


def cmd_uninstall(args, mgr: KeyManager) -> int:
    removed = mgr.uninstall()
    print(f"{mgr.authorized_keys}: {'managed section removed' if removed else 'no managed section'}")
    return EX_OK


COMMANDS = {
    "issue": cmd_issue,
    "revoke": cmd_revoke,
    "renew": cmd_renew,
    "list": cmd_list,
    "reconcile": cmd_reconcile,
    "refresh": cmd_reconcile,
    "sweep": cmd_sweep,
    "prune": cmd_prune,
    "uninstall": cmd_uninstall,
}
SINGLE_USER_COMMANDS = {"issue", "revoke", "renew"}


def main(argv: Optional[List[str]] = None) -> int:
    args = _create_argument_parser().parse_args(argv)
    if args.verbose:
        get_logger("narrowssh", level="DEBUG" if args.verbose > 1 else "INFO")

    try:
        if args.all_users and args.command in SINGLE_USER_COMMANDS:
            raise ConfigError(f"'{args.command}' works on one user at a time")
        if args.all_users and (args.authorized_keys or args.registry):
            raise ConfigError("--authorized-keys/--registry cannot be combined with --all-users")

        if args.all_users:
            controls = ControlManager.load(args.control)
        else:
            controls = ControlManager.load_if_present(args.control)

        status = EX_OK
        for user in resolve_users(args, controls):
            log.debug(f"[CLI] {args.command} for {user.pw_name}")
            owner = _owner_for(user)
            groups = os.getgrouplist(user.pw_name, user.pw_gid) if owner else ()
            # root works in the user's home with the user's rights
            with acting_as(owner, groups):
                mgr = _manager_for(args, user, controls)
                try:
                    status = max(status, COMMANDS[args.command](args, mgr))
                finally:
                    mgr.close()
        return status
    except LockBusy as exc:
        print(f"narrowssh: {exc}", file=sys.stderr)
        return EX_TEMPFAIL
    except (NarrowSSHError, OSError, ValueError) as exc:
        print(f"narrowssh: {exc}", file=sys.stderr)
        return EX_ERROR


if __name__ == "__main__":
    sys.exit(main())
