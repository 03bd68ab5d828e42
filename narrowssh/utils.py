"""
narrowssh.utils
---------------
Lightweight helpers for id generation, UTC timestamps and base64.
Timestamps are stored as RFC3339 strings with second precision so registry
rows sort lexicographically in time order.
"""

from __future__ import annotations
import base64, uuid
from datetime import datetime, timezone
from typing import Optional

TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"), validate=True)

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)

def format_ts(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TS_FORMAT)

def parse_ts(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.strptime(s, TS_FORMAT).replace(tzinfo=timezone.utc)

def now_ts() -> str:
    # RFC3339 / ISO 8601 in UTC, second precision
    return format_ts(utcnow())

def new_id() -> str:
    return uuid.uuid4().hex

