"""
Record Store Factory

Selects the backend (postgres | memory) from config. The rest of the app
only calls get_record_store(); concrete classes are imported lazily so the
memory backend never needs a database driver at import time.
"""

from __future__ import annotations

from fileflow.core.config import settings
from fileflow.store.base import RecordStore


def get_record_store(backend: str | None = None) -> RecordStore:
    backend = (backend or settings.record_store_backend).lower()

    if backend == "postgres":
        from fileflow.store.postgres import PostgresRecordStore
        return PostgresRecordStore()

    if backend == "memory":
        from fileflow.store.memory import InMemoryRecordStore
        return InMemoryRecordStore()

    raise ValueError(
        f"Unknown record store backend: '{backend}'. "
        f"Valid options: 'postgres', 'memory'"
    )
