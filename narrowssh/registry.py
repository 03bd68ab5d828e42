"""
narrowssh.registry
------------------
Key registry: the only owner of ManagedKey lifetime.

    issue   -> active
    revoke  -> active|expired to revoked (irreversible)
    time    -> active to expired (derived from expires_at, never stored)
    prune   -> revoked/expired records older than the retention window are
               deleted; their ids are retired and never handed out again

Callers serialise mutations with the registry lock (see narrowssh.lock).
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .crypto import fingerprint, parse_public_key
from .errors import AlreadyRevoked, DuplicateKey, KeyExpired, NotFound, UnsupportedRestriction
from .logger import get_logger
from .models import KeyState, ManagedKey, Restrictions
from .policy import render_options
from .storage import StorageProvider
from .utils import format_ts, new_id, parse_ts, utcnow

log = get_logger("narrowssh.registry")

DEFAULT_RETENTION = timedelta(days=30)


class KeyRegistry:
    def __init__(self, storage: StorageProvider, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock()

    def _allocate_id(self) -> str:
        key_id = new_id()
        while self.storage.id_known(key_id):
            key_id = new_id()
        return key_id

    def _future_expiry(self, expires_at: Optional[str], now: datetime) -> Optional[str]:
        if expires_at is None:
            return None
        try:
            when = parse_ts(expires_at)
        except ValueError as exc:
            raise UnsupportedRestriction(f"invalid expiry timestamp {expires_at!r}") from exc
        if when is None:
            return None
        if when <= now:
            raise UnsupportedRestriction(f"expiry {expires_at} is not in the future")
        return format_ts(when)

    def _require(self, key_id: str) -> ManagedKey:
        key = self.storage.get_key(key_id)
        if key is None:
            raise NotFound(f"no key with id {key_id}")
        if key.revoked_at is not None:
            raise AlreadyRevoked(f"key {key_id} was already revoked at {key.revoked_at}")
        return key

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def issue(self, public_key: str, command: str,
              restrictions: Optional[Restrictions] = None, label: str = "") -> ManagedKey:
        """
        Register a new command-restricted key.

        The key line and the restriction policy are validated before anything
        is written. Raises InvalidPublicKey, PolicyError, DuplicateKey or
        StoreIoError.
        """
        restrictions = restrictions or Restrictions()
        now = self._now()
        pk = parse_public_key(public_key)
        restrictions = restrictions.with_expiry(self._future_expiry(restrictions.expires_at, now))
        render_options(command, restrictions)

        fpr = fingerprint(pk.line)
        for existing in self.storage.fetch_by_fingerprint(fpr):
            if existing.state(now) is KeyState.ACTIVE:
                raise DuplicateKey(f"key {fpr} is already active as {existing.key_id}")

        key = ManagedKey(
            key_id=self._allocate_id(),
            public_key=pk.line,
            command=command,
            restrictions=restrictions,
            created_at=format_ts(now),
            label=label,
        )
        self.storage.insert_key(key, fpr)
        self.storage.log_event("key.issued", {"key_id": key.key_id, "fingerprint": fpr, "command": command})
        log.info(f"[REGISTRY] issued {key.key_id} ({fpr})")
        return key

    def revoke(self, key_id: str) -> ManagedKey:
        key = self._require(key_id)
        key.revoked_at = format_ts(self._now())
        self.storage.update_key(key)
        self.storage.log_event("key.revoked", {"key_id": key_id})
        log.info(f"[REGISTRY] revoked {key_id}")
        return key

    def renew(self, key_id: str, expires_at: Optional[str]) -> ManagedKey:
        """Move (or clear, with None) the expiry of an active key."""
        now = self._now()
        key = self._require(key_id)
        if key.is_expired(now):
            raise KeyExpired(f"key {key_id} expired at {key.expires_at}")
        key.restrictions = key.restrictions.with_expiry(self._future_expiry(expires_at, now))
        self.storage.update_key(key)
        self.storage.log_event("key.renewed", {"key_id": key_id, "expires_at": key.expires_at})
        log.info(f"[REGISTRY] renewed {key_id} until {key.expires_at or 'forever'}")
        return key

    def prune(self, retention: timedelta = DEFAULT_RETENTION) -> int:
        """Delete revoked/expired records that left the active state before now - retention."""
        now = self._now()
        cutoff = now - retention
        victims = []
        for key in self.storage.list_keys():
            state = key.state(now)
            if state is KeyState.REVOKED:
                ended = parse_ts(key.revoked_at)
            elif state is KeyState.EXPIRED:
                ended = parse_ts(key.expires_at)
            else:
                continue
            if ended < cutoff:
                victims.append(key.key_id)

        removed = self.storage.delete_keys(victims, format_ts(now))
        if removed:
            self.storage.log_event("key.pruned", {"key_ids": victims, "count": removed})
            log.info(f"[REGISTRY] pruned {removed} key(s)")
        return removed

    def sweep_expired(self) -> List[ManagedKey]:
        """Report keys that expired since the last sweep (audit only)."""
        now = self._now()
        newly = []
        for key in self.storage.list_keys():
            if key.state(now) is not KeyState.EXPIRED:
                continue
            if self.storage.list_events("key.expired", key.key_id):
                continue
            self.storage.log_event("key.expired", {"key_id": key.key_id, "expires_at": key.expires_at})
            log.info(f"[REGISTRY] {key.key_id} expired at {key.expires_at}")
            newly.append(key)
        return newly

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, key_id: str) -> ManagedKey:
        key = self.storage.get_key(key_id)
        if key is None:
            raise NotFound(f"no key with id {key_id}")
        return key

    def list_keys(self) -> List[ManagedKey]:
        return self.storage.list_keys()

    def list_desired(self) -> List[ManagedKey]:
        """Active, unexpired keys in issuance order."""
        now = self._now()
        return [k for k in self.storage.list_keys() if k.state(now) is KeyState.ACTIVE]
