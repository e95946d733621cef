from __future__ import annotations

import threading

from fireduck.core._log_helper import get_logger
from fireduck.core.data_model import DataModel
from fireduck.core.time import Time

from ._models import Column, IndexCatalog

logger = get_logger(__name__)

DEFAULT_SCHEMA_CACHE_TTL = 3600


class SchemaCacheEntry(DataModel):
    """Cached schema of one collection."""

    columns: list[Column]
    """Inferred columns."""

    index_catalog: IndexCatalog | None = None
    """Index metadata fetched with the schema."""

    created_at: float
    """Creation time, seconds since the epoch."""


class SchemaCache:
    """Process-wide schema cache keyed by (project, database, collection).

    Entries are immutable once stored. A TTL of 0 disables caching.
    """

    _lock: threading.Lock
    _entries: dict[tuple[str, str, str], SchemaCacheEntry]
    ttl: int

    def __init__(self, ttl: int = DEFAULT_SCHEMA_CACHE_TTL):
        self._lock = threading.Lock()
        self._entries = dict()
        self.ttl = max(ttl, 0)

    def set_ttl(self, ttl: int):
        with self._lock:
            self.ttl = max(ttl, 0)
            if self.ttl == 0:
                self._entries.clear()

    def get(
        self, project_id: str, database_id: str, collection: str
    ) -> SchemaCacheEntry | None:
        key = (project_id, database_id, collection)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if Time.now() - entry.created_at >= self.ttl:
                del self._entries[key]
                logger.debug("Schema cache entry for %s expired", collection)
                return None
            return entry

    def put(
        self,
        project_id: str,
        database_id: str,
        collection: str,
        columns: list[Column],
        index_catalog: IndexCatalog | None = None,
    ) -> SchemaCacheEntry:
        entry = SchemaCacheEntry(
            columns=columns,
            index_catalog=index_catalog,
            created_at=Time.now(),
        )
        with self._lock:
            if self.ttl > 0:
                self._entries[(project_id, database_id, collection)] = entry
        return entry

    def purge(self, collection: str | None = None) -> int:
        """Drop entries of one collection, or all entries.

        Returns:
            Number of dropped entries.
        """
        with self._lock:
            if collection is None:
                count = len(self._entries)
                self._entries.clear()
                return count
            keys = [k for k in self._entries if k[2] == collection]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SessionRegistry:
    """Connected database per session id."""

    _lock: threading.Lock
    _databases: dict[str, str]

    def __init__(self):
        self._lock = threading.Lock()
        self._databases = dict()

    def connect(self, session_id: str, database_id: str):
        with self._lock:
            self._databases[session_id] = database_id

    def disconnect(self, session_id: str) -> bool:
        with self._lock:
            return self._databases.pop(session_id, None) is not None

    def get(self, session_id: str) -> str | None:
        with self._lock:
            return self._databases.get(session_id)


schema_cache = SchemaCache()
session_registry = SessionRegistry()
