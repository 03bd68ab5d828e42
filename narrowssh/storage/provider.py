# narrowssh/storage/provider.py
from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional

from narrowssh.models import ManagedKey


class StorageProvider:
    """
    Persistence interface behind the key registry.

    Providers only store and fetch; lifecycle rules live in KeyRegistry.
    Every mutating call must be durable when it returns.
    """

    # keyring
    def insert_key(self, key: ManagedKey, fingerprint: str) -> None: ...
    def update_key(self, key: ManagedKey) -> None: ...
    def get_key(self, key_id: str) -> Optional[ManagedKey]: ...
    def list_keys(self) -> List[ManagedKey]: ...
    def fetch_by_fingerprint(self, fpr: str) -> List[ManagedKey]: ...
    def id_known(self, key_id: str) -> bool: ...
    def delete_keys(self, key_ids: Iterable[str], retired_at: str) -> int: ...

    # audit
    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None: ...
    def list_events(self, event_type: Optional[str] = None, key_id: Optional[str] = None) -> List[Dict[str, Any]]: ...

    def close(self) -> None: ...
