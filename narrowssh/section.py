"""
narrowssh.section
-----------------
Delimiter-bounded sub-document merge.

A managed section is the run of lines between a BEGIN and an END marker
line inside a file somebody else owns. Everything outside the markers is
opaque and comes back byte-for-byte. Works on bytes and knows nothing about
SSH, so any line-oriented file can host a section.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from .errors import CorruptSection


@dataclass(frozen=True)
class Markers:
    begin: bytes
    end: bytes

    @classmethod
    def for_token(cls, token: str) -> "Markers":
        return cls(
            begin=f"# {token}:BEGIN managed section, do not edit".encode("utf-8"),
            end=f"# {token}:END managed section".encode("utf-8"),
        )


DEFAULT_MARKERS = Markers.for_token("narrowssh")


def _find(lines: List[bytes], marker: bytes) -> List[int]:
    return [i for i, line in enumerate(lines) if line.strip() == marker]


def split_section(content: bytes, markers: Markers = DEFAULT_MARKERS) -> Optional[Tuple[bytes, List[bytes], bytes]]:
    """
    Return (prefix, body_lines, suffix), or None when the file has no section.

    Raises CorruptSection for a lone marker, repeated markers, or END before
    BEGIN. Nothing is ever repaired.
    """
    lines = content.splitlines(keepends=True)
    begins = _find(lines, markers.begin)
    ends = _find(lines, markers.end)

    if not begins and not ends:
        return None
    if not begins or not ends:
        which = "BEGIN" if begins else "END"
        raise CorruptSection(f"found a {which} marker without its counterpart")
    if len(begins) > 1 or len(ends) > 1:
        raise CorruptSection(f"found {len(begins)} BEGIN and {len(ends)} END markers; expected one pair")
    b, e = begins[0], ends[0]
    if e < b:
        raise CorruptSection(f"END marker (line {e + 1}) precedes BEGIN marker (line {b + 1})")

    return b"".join(lines[:b]), lines[b + 1:e], b"".join(lines[e + 1:])


def _encode(line: Union[str, bytes]) -> bytes:
    raw = line.encode("utf-8") if isinstance(line, str) else line
    if b"\n" in raw or b"\r" in raw:
        raise ValueError("section lines must not contain line breaks")
    return raw


def merge_section(content: bytes, lines: Sequence[Union[str, bytes]],
                  markers: Markers = DEFAULT_MARKERS) -> bytes:
    """Replace (or append) the managed section so it holds exactly `lines`."""
    body = b"".join(_encode(line) + b"\n" for line in lines)
    parts = split_section(content, markers)
    if parts is None:
        prefix, suffix = content, b""
        # the BEGIN marker has to start on a line of its own
        if prefix and not prefix.endswith((b"\n", b"\r")):
            prefix += b"\n"
    else:
        prefix, _, suffix = parts
    return prefix + markers.begin + b"\n" + body + markers.end + b"\n" + suffix


def strip_section(content: bytes, markers: Markers = DEFAULT_MARKERS) -> Optional[bytes]:
    """Return content without the section (markers included), or None if there is none."""
    parts = split_section(content, markers)
    if parts is None:
        return None
    prefix, _, suffix = parts
    return prefix + suffix
