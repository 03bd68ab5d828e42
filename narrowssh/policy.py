"""
narrowssh.policy
----------------
Restriction policy engine: turns a ManagedKey into one authorized_keys line.

    <options> <key-type> <key-data> narrowssh:<key_id>

Option values use the authorized_keys quoting rule: inside double quotes a
literal `"` is written as `\\"` and a literal `\\` as `\\\\`. Nothing else is
escaped, and everything that needs escaping always is; the command text can
therefore never close its own quotes. Characters that cannot be represented
on a single line (CR, LF, NUL) are rejected instead.
"""

from __future__ import annotations
import re, shlex
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .crypto import parse_public_key
from .errors import InvalidCommand, InvalidPublicKey, PolicyError, UnsupportedRestriction
from .logger import get_logger
from .models import ManagedKey, Restrictions
from .utils import parse_ts

log = get_logger("narrowssh.policy")

COMMENT_PREFIX = "narrowssh:"

# Fixed order keeps rendering byte-stable across runs.
FLAG_OPTIONS: Tuple[Tuple[str, str], ...] = (
    ("no_agent_forwarding", "no-agent-forwarding"),
    ("no_port_forwarding", "no-port-forwarding"),
    ("no_pty", "no-pty"),
    ("no_user_rc", "no-user-rc"),
    ("no_x11_forwarding", "no-X11-forwarding"),
)

_FORBIDDEN_COMMAND_CHARS = {"\n": "newline", "\r": "carriage return", "\0": "NUL"}
_SOURCE_PATTERN = re.compile(r"^!?[A-Za-z0-9.:*?/_%-]+$")
_KEY_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


# --------- Quoting ----------
def quote_option_value(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _read_quoted(text: str, pos: int) -> Tuple[str, int]:
    """Read a quoted value starting at text[pos] == '"'; return (value, end)."""
    if pos >= len(text) or text[pos] != '"':
        raise ValueError(f"expected '\"' at offset {pos}")
    out = []
    i = pos + 1
    while i < len(text):
        c = text[i]
        if c == "\\":
            if i + 1 >= len(text):
                break
            out.append(text[i + 1])
            i += 2
            continue
        if c == '"':
            return "".join(out), i + 1
        out.append(c)
        i += 1
    raise ValueError("unterminated quoted value")


def unquote_option_value(quoted: str) -> str:
    value, end = _read_quoted(quoted, 0)
    if end != len(quoted):
        raise ValueError("trailing characters after quoted value")
    return value


def split_options(line: str) -> Tuple[str, str]:
    """Split an entry into (options, rest) at the first unquoted space."""
    in_quotes = False
    i = 0
    while i < len(line):
        c = line[i]
        if in_quotes and c == "\\":
            i += 2
            continue
        if c == '"':
            in_quotes = not in_quotes
        elif c in " \t" and not in_quotes:
            return line[:i], line[i:].lstrip(" \t")
        i += 1
    if in_quotes:
        raise ValueError("unterminated quoted value")
    return line, ""


def parse_options(options: str) -> List[Tuple[str, Optional[str]]]:
    """Parse `name[="value"],...` back into (name, value) pairs."""
    result: List[Tuple[str, Optional[str]]] = []
    i = 0
    while i < len(options):
        j = i
        while j < len(options) and options[j] not in "=,":
            j += 1
        name = options[i:j]
        if not name:
            raise ValueError(f"empty option name at offset {i}")
        value = None
        if j < len(options) and options[j] == "=":
            value, j = _read_quoted(options, j + 1)
        result.append((name, value))
        if j < len(options):
            if options[j] != ",":
                raise ValueError(f"expected ',' at offset {j}")
            j += 1
            if j == len(options):
                raise ValueError("trailing ','")
        i = j
    return result


# --------- Validation ----------
def validate_command(command: str) -> None:
    if not command or not command.strip():
        raise InvalidCommand("forced command must not be empty")
    for ch, name in _FORBIDDEN_COMMAND_CHARS.items():
        if ch in command:
            raise InvalidCommand(f"forced command contains a {name}")


def command_from_argv(argv: Sequence[str]) -> str:
    """Join an argument vector into a shell-quoted forced command."""
    if not argv:
        raise InvalidCommand("forced command must not be empty")
    command = shlex.join(list(argv))
    validate_command(command)
    return command


def _source_patterns(patterns: Iterable[str]) -> List[str]:
    cleaned = list(patterns)
    positives, negatives = set(), set()
    for p in cleaned:
        if not _SOURCE_PATTERN.fullmatch(p or ""):
            raise UnsupportedRestriction(f"invalid source address pattern {p!r}")
        if p.startswith("!"):
            negatives.add(p[1:])
        else:
            positives.add(p)
    clash = positives & negatives
    if clash:
        raise UnsupportedRestriction(
            f"source address both allowed and denied: {', '.join(sorted(clash))}"
        )
    if negatives and not positives:
        raise UnsupportedRestriction("source allowlist contains only negated patterns")
    return cleaned


def _expiry_time(expires_at: str) -> str:
    try:
        dt = parse_ts(expires_at)
    except ValueError as exc:
        raise UnsupportedRestriction(f"invalid expiry timestamp {expires_at!r}") from exc
    return dt.strftime("%Y%m%d%H%M%SZ")


def render_options(command: str, restrictions: Restrictions) -> str:
    validate_command(command)
    opts = [f"command={quote_option_value(command)}"]
    if restrictions.source_addresses:
        patterns = _source_patterns(restrictions.source_addresses)
        opts.append(f"from={quote_option_value(','.join(patterns))}")
    if restrictions.expires_at:
        opts.append(f"expiry-time={quote_option_value(_expiry_time(restrictions.expires_at))}")
    for attr, token in FLAG_OPTIONS:
        if getattr(restrictions, attr):
            opts.append(token)
    return ",".join(opts)


# --------- Rendering ----------
def render(key: ManagedKey) -> str:
    if not _KEY_ID.fullmatch(key.key_id or ""):
        raise PolicyError(f"unrenderable key id {key.key_id!r}")
    options = render_options(key.command, key.restrictions)
    try:
        pk = parse_public_key(key.public_key)
    except InvalidPublicKey as exc:
        raise PolicyError(f"stored public key is invalid: {exc}") from exc
    return f"{options} {pk.key_type} {pk.key_data} {COMMENT_PREFIX}{key.key_id}"


def render_all(keys: Iterable[ManagedKey]) -> Tuple[List[str], Dict[str, PolicyError]]:
    """Render every key; a failing key is reported and skipped, never fatal."""
    lines: List[str] = []
    failures: Dict[str, PolicyError] = {}
    for key in keys:
        try:
            lines.append(render(key))
        except PolicyError as exc:
            log.error(f"[POLICY] skipping key {key.key_id}: {exc}")
            failures[key.key_id] = exc
    return lines, failures


def managed_id(line: str) -> Optional[str]:
    """Return the key id embedded in a rendered line, if any."""
    try:
        _, rest = split_options(line.strip())
    except ValueError:
        return None
    parts = rest.split()
    if len(parts) >= 3 and parts[2].startswith(COMMENT_PREFIX):
        return parts[2][len(COMMENT_PREFIX):]
    return None
