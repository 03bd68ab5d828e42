# narrowssh/models.py
from __future__ import annotations
from dataclasses import dataclass, asdict, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .utils import now_ts, parse_ts, utcnow


class KeyState(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"   # derived from expires_at, never stored


@dataclass(frozen=True)
class Restrictions:
    """
    Flags rendered next to the forced command.

    The boolean flags default to the locked-down setting; a caller has to
    opt out explicitly to hand a key a PTY or forwarding rights.
    """
    no_pty: bool = True
    no_port_forwarding: bool = True
    no_x11_forwarding: bool = True
    no_agent_forwarding: bool = True
    no_user_rc: bool = True
    source_addresses: Tuple[str, ...] = ()
    expires_at: Optional[str] = None

    def with_expiry(self, expires_at: Optional[str]) -> "Restrictions":
        return replace(self, expires_at=expires_at)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["source_addresses"] = list(self.source_addresses)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Restrictions":
        return cls(
            no_pty=bool(data.get("no_pty", True)),
            no_port_forwarding=bool(data.get("no_port_forwarding", True)),
            no_x11_forwarding=bool(data.get("no_x11_forwarding", True)),
            no_agent_forwarding=bool(data.get("no_agent_forwarding", True)),
            no_user_rc=bool(data.get("no_user_rc", True)),
            source_addresses=tuple(data.get("source_addresses", ())),
            expires_at=data.get("expires_at"),
        )


@dataclass
class ManagedKey:
    """
    Registry-level representation of an issued, command-restricted key.

    Storage-agnostic: every provider (SQLite, memory) returns these.
    """
    key_id: str
    public_key: str
    command: str
    restrictions: Restrictions = field(default_factory=Restrictions)
    created_at: str = field(default_factory=now_ts)
    revoked_at: Optional[str] = None
    label: str = ""

    @property
    def expires_at(self) -> Optional[str]:
        return self.restrictions.expires_at

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires = parse_ts(self.expires_at)
        if expires is None:
            return False
        return (now or utcnow()) >= expires

    def state(self, now: Optional[datetime] = None) -> KeyState:
        if self.revoked_at is not None:
            return KeyState.REVOKED
        if self.is_expired(now):
            return KeyState.EXPIRED
        return KeyState.ACTIVE

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        d = asdict(self)
        d["restrictions"] = self.restrictions.to_dict()
        d["state"] = self.state(now).value
        return d
