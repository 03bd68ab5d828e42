"""
narrowssh.manager
-----------------
Locked operations over one (registry, authorized_keys) pair.

Every operation takes the registry lock and then the authorized_keys lock,
always in that order, and reads the desired state inside the same locked
scope that writes the file, so a concurrent revoke can never be undone by a
stale reconciliation.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Tuple
import os

from .crypto import DEFAULT_ALGORITHM, generate_keypair
from .errors import NarrowSSHError, ReconcileIoError, StoreIoError
from .lock import DEFAULT_TIMEOUT, locked
from .logger import get_logger
from .models import ManagedKey, Restrictions
from .policy import managed_id, render_all
from .paths import Owner, claim_file, prepare_directory
from .reconciler import installed_lines, reconcile, remove_section, resolve_target
from .registry import DEFAULT_RETENTION, KeyRegistry
from .section import DEFAULT_MARKERS, Markers
from .storage import StorageProvider, load_storage_provider
from .utils import utcnow

log = get_logger("narrowssh.manager")


@dataclass
class ReconcileReport:
    path: str
    installed: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    changed: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class IssueResult:
    key: ManagedKey
    report: ReconcileReport
    # only set when narrowssh generated the keypair; never stored
    private_key: Optional[str] = field(default=None, repr=False)


class KeyManager:
    def __init__(
        self,
        authorized_keys: str,
        registry_path: Optional[str] = None,
        storage: Optional[StorageProvider] = None,
        lock_timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
        owner: Optional[Owner] = None,
        markers: Markers = DEFAULT_MARKERS,
        tmp_dir: Optional[str] = None,
    ):
        self.authorized_keys = resolve_target(authorized_keys)
        self.registry_path = os.path.expanduser(registry_path) if registry_path else None
        self.lock_timeout = lock_timeout
        self.owner = owner
        self.markers = markers
        self.tmp_dir = tmp_dir

        if storage is None:
            if self.registry_path is None:
                raise ValueError("either registry_path or storage is required")
            storage = self._open_sqlite(self.registry_path)
        self.storage = storage
        self.registry = KeyRegistry(storage, clock=clock)

    def _open_sqlite(self, path: str) -> StorageProvider:
        try:
            prepare_directory(os.path.dirname(path) or ".", self.owner)
            if self.owner is not None:
                # created and handed over before sqlite ever opens it by name
                claim_file(path, self.owner)
        except OSError as exc:
            raise StoreIoError(f"cannot prepare registry {path}: {exc}") from exc
        return load_storage_provider({"provider": "sqlite", "sqlite_path": path})

    def close(self) -> None:
        self.storage.close()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            prepare_directory(os.path.dirname(self.authorized_keys), self.owner)
        except OSError as exc:
            raise ReconcileIoError(f"cannot create {os.path.dirname(self.authorized_keys)}: {exc}") from exc
        paths = [self.authorized_keys]
        if self.registry_path:
            paths.insert(0, self.registry_path)
        with locked(*paths, timeout=self.lock_timeout, owner=self.owner):
            yield

    def _converge(self) -> ReconcileReport:
        """Render the current desired state and write it. Caller holds the locks."""
        desired = self.registry.list_desired()
        lines, failures = render_all(desired)
        changed = reconcile(self.authorized_keys, lines, tmp_dir=self.tmp_dir,
                            markers=self.markers, owner=self.owner)
        report = ReconcileReport(
            path=self.authorized_keys,
            installed=[k.key_id for k in desired if k.key_id not in failures],
            failures={key_id: str(exc) for key_id, exc in failures.items()},
            changed=changed,
        )
        if failures:
            log.warning(f"[MANAGER] {len(failures)} key(s) could not be rendered into {self.authorized_keys}")
        return report

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def issue(self, command: str, public_key: Optional[str] = None,
              restrictions: Optional[Restrictions] = None, label: str = "",
              algorithm: str = DEFAULT_ALGORITHM) -> IssueResult:
        """
        Issue a key and install it.

        Without `public_key` a keypair is generated and the private half is
        returned in the result, once. If the install fails after a generated
        key was registered, that key is revoked again: nobody holds its
        private half any more.
        """
        private_key = None
        if public_key is None:
            public_key, private_key = generate_keypair(algorithm, comment=label)

        with self._locked():
            key = self.registry.issue(public_key, command, restrictions, label=label)
            try:
                report = self._converge()
            except NarrowSSHError:
                if private_key is not None:
                    log.error(f"[MANAGER] install of generated key {key.key_id} failed; revoking it")
                    self.registry.revoke(key.key_id)
                raise
        return IssueResult(key=key, report=report, private_key=private_key)

    def revoke(self, key_id: str) -> ReconcileReport:
        with self._locked():
            self.registry.revoke(key_id)
            return self._converge()

    def renew(self, key_id: str, expires_at: Optional[str]) -> Tuple[ManagedKey, ReconcileReport]:
        with self._locked():
            key = self.registry.renew(key_id, expires_at)
            return key, self._converge()

    def reconcile(self) -> ReconcileReport:
        with self._locked():
            return self._converge()

    def sweep(self) -> Tuple[List[ManagedKey], ReconcileReport]:
        """Record newly expired keys and drop them from the file."""
        with self._locked():
            expired = self.registry.sweep_expired()
            return expired, self._converge()

    def prune(self, retention: timedelta = DEFAULT_RETENTION) -> int:
        with self._locked():
            return self.registry.prune(retention)

    def uninstall(self) -> bool:
        """Remove the managed section; the registry is left as it is."""
        with self._locked():
            return remove_section(self.authorized_keys, tmp_dir=self.tmp_dir,
                                  markers=self.markers, owner=self.owner)

    def list_keys(self) -> List[ManagedKey]:
        return self.registry.list_keys()

    def installed_ids(self) -> List[str]:
        """Key ids currently present in the managed section of the file."""
        ids = []
        for line in installed_lines(self.authorized_keys, self.markers):
            key_id = managed_id(line)
            if key_id:
                ids.append(key_id)
        return ids
