# narrowssh/storage/__init__.py

from __future__ import annotations

from .provider import StorageProvider
from .providers.memory_provider import InMemoryStorage
from .providers.sqlite_provider import SQLiteStorage
import os


def load_storage_provider(config: dict | None = None) -> StorageProvider:
    """
    Factory resolver for selecting the registry backend.

        - sqlite (default)
        - memory (tests, dry runs)
    """
    config = config or {}
    provider = config.get("provider") or os.getenv("NARROWSSH_STORAGE_PROVIDER", "sqlite")

    if provider == "memory":
        return InMemoryStorage()

    if provider == "sqlite":
        db_path = config.get("sqlite_path") or os.getenv("NARROWSSH_DB_PATH", "registry.db")
        return SQLiteStorage(os.path.expanduser(str(db_path)))

    raise ValueError(f"Unknown storage provider: {provider}")


__all__ = [
    "StorageProvider",
    "InMemoryStorage",
    "SQLiteStorage",
    "load_storage_provider",
]
