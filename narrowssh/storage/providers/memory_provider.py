from copy import deepcopy
from typing import Optional, Dict, Any, Iterable, List
from narrowssh.models import ManagedKey
from narrowssh.storage.provider import StorageProvider
from narrowssh.utils import now_ts


class InMemoryStorage(StorageProvider):
    def __init__(self):
        self.keys: Dict[str, ManagedKey] = {}   # insertion ordered
        self.fingerprints: Dict[str, str] = {}
        self.retired: Dict[str, str] = {}
        self.audit: List[Dict[str, Any]] = []

    def insert_key(self, key: ManagedKey, fingerprint: str):
        if self.id_known(key.key_id):
            raise ValueError(f"duplicate key id {key.key_id}")
        self.keys[key.key_id] = deepcopy(key)
        self.fingerprints[key.key_id] = fingerprint

    def update_key(self, key: ManagedKey):
        if key.key_id in self.keys:
            self.keys[key.key_id] = deepcopy(key)

    def get_key(self, key_id: str) -> Optional[ManagedKey]:
        rec = self.keys.get(key_id)
        return deepcopy(rec) if rec else None

    def list_keys(self) -> List[ManagedKey]:
        # sorted() is stable, so insertion order breaks created_at ties
        return [deepcopy(k) for k in sorted(self.keys.values(), key=lambda k: k.created_at)]

    def fetch_by_fingerprint(self, fpr: str) -> List[ManagedKey]:
        return [k for k in self.list_keys() if self.fingerprints.get(k.key_id) == fpr]

    def id_known(self, key_id: str) -> bool:
        return key_id in self.keys or key_id in self.retired

    def delete_keys(self, key_ids: Iterable[str], retired_at: str) -> int:
        removed = 0
        for key_id in key_ids:
            self.retired.setdefault(key_id, retired_at)
            if self.keys.pop(key_id, None) is not None:
                self.fingerprints.pop(key_id, None)
                removed += 1
        return removed

    # audit
    def log_event(self, event_type: str, payload: Dict[str, Any]):
        self.audit.append({"ts": now_ts(), "event_type": event_type, "payload": dict(payload)})

    def list_events(self, event_type: Optional[str] = None, key_id: Optional[str] = None):
        return [
            e for e in self.audit
            if (event_type is None or e["event_type"] == event_type)
            and (key_id is None or e["payload"].get("key_id") == key_id)
        ]

    def close(self):
        pass
