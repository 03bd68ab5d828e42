from __future__ import annotations
from contextlib import contextmanager
from typing import Optional, Dict, Any, Iterable, List
import json, sqlite3, os

from narrowssh.errors import StoreIoError
from narrowssh.models import ManagedKey, Restrictions
from narrowssh.storage.provider import StorageProvider
from narrowssh.utils import now_ts

_KEY_COLUMNS = "key_id, public_key, command, restrictions, created_at, revoked_at, label"


class SQLiteStorage(StorageProvider):
    def __init__(self, path="registry.db"):
        # If no directory, default to current working directory
        dir_path = os.path.dirname(path) or "."
        try:
            os.makedirs(dir_path, mode=0o700, exist_ok=True)
            self.db = sqlite3.connect(path)
            # Commits must reach disk before a mutation is acknowledged
            self.db.execute("PRAGMA synchronous=FULL")
            os.chmod(path, 0o600)
        except (OSError, sqlite3.Error) as exc:
            raise StoreIoError(f"cannot open registry store {path}: {exc}") from exc
        self.path = path
        self._init()

    @contextmanager
    def _tx(self):
        """Run one transaction; commit on success, roll back on error."""
        try:
            with self.db:
                yield self.db
        except sqlite3.Error as exc:
            raise StoreIoError(f"registry store failure: {exc}") from exc

    def _init(self) -> None:
        with self._tx() as db:
            db.execute("""CREATE TABLE IF NOT EXISTS keyring(
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                key_id TEXT NOT NULL UNIQUE,
                public_key TEXT NOT NULL,
                pub_key_fpr TEXT NOT NULL,
                command TEXT NOT NULL,
                restrictions TEXT NOT NULL,
                created_at TEXT NOT NULL,
                revoked_at TEXT,
                label TEXT
            )""")
            db.execute("CREATE INDEX IF NOT EXISTS keyring_fpr ON keyring(pub_key_fpr)")
            db.execute("""CREATE TABLE IF NOT EXISTS retired_ids(
                key_id TEXT PRIMARY KEY,
                retired_at TEXT NOT NULL
            )""")
            db.execute("""CREATE TABLE IF NOT EXISTS audit(
                ts TEXT,
                event_type TEXT,
                key_id TEXT,
                payload TEXT
            )""")

    @staticmethod
    def _row_to_key(row) -> ManagedKey:
        key_id, public_key, command, restrictions, created_at, revoked_at, label = row
        return ManagedKey(
            key_id=key_id,
            public_key=public_key,
            command=command,
            restrictions=Restrictions.from_dict(json.loads(restrictions)),
            created_at=created_at,
            revoked_at=revoked_at,
            label=label or "",
        )

    def insert_key(self, key: ManagedKey, fingerprint: str) -> None:
        with self._tx() as db:
            db.execute(
                "INSERT INTO keyring(key_id,public_key,pub_key_fpr,command,restrictions,created_at,revoked_at,label) "
                "VALUES(?,?,?,?,?,?,?,?)",
                (key.key_id, key.public_key, fingerprint, key.command,
                 json.dumps(key.restrictions.to_dict(), sort_keys=True),
                 key.created_at, key.revoked_at, key.label),
            )

    def update_key(self, key: ManagedKey) -> None:
        with self._tx() as db:
            db.execute(
                "UPDATE keyring SET command=?, restrictions=?, revoked_at=?, label=? WHERE key_id=?",
                (key.command, json.dumps(key.restrictions.to_dict(), sort_keys=True),
                 key.revoked_at, key.label, key.key_id),
            )

    def get_key(self, key_id: str) -> Optional[ManagedKey]:
        with self._tx() as db:
            row = db.execute(f"SELECT {_KEY_COLUMNS} FROM keyring WHERE key_id=?", (key_id,)).fetchone()
        return self._row_to_key(row) if row else None

    def list_keys(self) -> List[ManagedKey]:
        with self._tx() as db:
            rows = db.execute(f"SELECT {_KEY_COLUMNS} FROM keyring ORDER BY created_at, seq").fetchall()
        return [self._row_to_key(r) for r in rows]

    def fetch_by_fingerprint(self, fpr: str) -> List[ManagedKey]:
        with self._tx() as db:
            rows = db.execute(
                f"SELECT {_KEY_COLUMNS} FROM keyring WHERE pub_key_fpr=? ORDER BY created_at, seq", (fpr,)
            ).fetchall()
        return [self._row_to_key(r) for r in rows]

    def id_known(self, key_id: str) -> bool:
        with self._tx() as db:
            row = db.execute(
                "SELECT 1 FROM keyring WHERE key_id=? UNION ALL SELECT 1 FROM retired_ids WHERE key_id=?",
                (key_id, key_id),
            ).fetchone()
        return row is not None

    def delete_keys(self, key_ids: Iterable[str], retired_at: str) -> int:
        ids = list(key_ids)
        if not ids:
            return 0
        with self._tx() as db:
            db.executemany("INSERT OR IGNORE INTO retired_ids(key_id,retired_at) VALUES(?,?)",
                           [(k, retired_at) for k in ids])
            cur = db.executemany("DELETE FROM keyring WHERE key_id=?", [(k,) for k in ids])
            return cur.rowcount

    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        with self._tx() as db:
            db.execute("INSERT INTO audit(ts,event_type,key_id,payload) VALUES(?,?,?,?)",
                       (now_ts(), event_type, payload.get("key_id"),
                        json.dumps(payload, separators=(",", ":"), sort_keys=True)))

    def list_events(self, event_type: Optional[str] = None, key_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT ts, event_type, payload FROM audit WHERE 1=1"
        params: List[str] = []
        if event_type is not None:
            sql += " AND event_type=?"
            params.append(event_type)
        if key_id is not None:
            sql += " AND key_id=?"
            params.append(key_id)
        with self._tx() as db:
            rows = db.execute(sql + " ORDER BY rowid", tuple(params)).fetchall()
        return [{"ts": ts, "event_type": et, "payload": json.loads(p)} for ts, et, p in rows]

    def close(self):
        self.db.close()
