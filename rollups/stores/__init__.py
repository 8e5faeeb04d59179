from __future__ import annotations
from rollups.config import Settings
from rollups.stores.base import BucketQuery, BucketStore, BucketUpdate
from rollups.stores.memory import MemoryStore

__all__ = ["BucketQuery", "BucketStore", "BucketUpdate", "MemoryStore", "build_store"]

def build_store(s: Settings) -> BucketStore:
    backend = s.store.lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "sql":
        from rollups.stores.sql_store import SqlStore
        return SqlStore(s.database_url)
    if backend == "redis":
        from rollups.stores.redis_store import RedisStore
        return RedisStore(s.redis_url, prefix=s.redis_prefix)
    raise ValueError(f"unknown ROLLUP_STORE backend: {s.store!r}")
