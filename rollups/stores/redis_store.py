from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Dict, List, Optional
import uuid
import orjson
import redis
from rollups.errors import StoreError, StoreUnavailableError
from rollups.schemas import Bucket, CountBucket, Event, Page, StoredEvent
from rollups.stores.base import BucketQuery, BucketStore, BucketUpdate, counts_by_start

class RedisStore(BucketStore):
    """Buckets as hashes, histories as lists, and a sorted set per collection
    scoring bucket ids by ``bucket_start``. A merge is a single MULTI/EXEC."""

    def __init__(self, url: str, prefix: str = "rollups", client: Optional[redis.Redis] = None):
        self.r = client or redis.Redis.from_url(url, decode_responses=True)
        self.prefix = prefix

    def _index_key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}:buckets"

    def _bucket_key(self, collection: str, bucket_id: str) -> str:
        return f"{self.prefix}:{collection}:bucket:{bucket_id}"

    def _events_key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}:events"

    @contextmanager
    def _errors(self):
        try:
            yield
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            raise StoreUnavailableError(str(e)) from e
        except redis.exceptions.RedisError as e:
            raise StoreError(str(e)) from e

    def upsert_bucket(self, collection: str, bucket_id: str, update: BucketUpdate) -> None:
        f = update.set_fields
        key = self._bucket_key(collection, bucket_id)
        with self._errors():
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(key, mapping={
                "id": bucket_id,
                "application_id": f["application_id"],
                "grouping_definition": f["grouping_definition"],
                "grouping_id": f["grouping_id"],
                "nested_grouping_ids": orjson.dumps(list(f["nested_grouping_ids"])).decode("utf-8"),
                "window": str(f["window"]),
                "bucket_start": int(f["bucket_start"]),
            })
            pipe.hincrby(key, "count", int(update.increment))
            if update.summary is not None:
                pipe.rpush(f"{key}:events", update.summary.model_dump_json())
            if update.event_id is not None:
                pipe.rpush(f"{key}:event_ids", update.event_id)
            pipe.zadd(self._index_key(collection), {bucket_id: int(f["bucket_start"])})
            pipe.execute()

    def _load(self, collection: str, ids: List[str]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        pipe = self.r.pipeline(transaction=True)
        for bucket_id in ids:
            key = self._bucket_key(collection, bucket_id)
            pipe.hgetall(key)
            pipe.lrange(f"{key}:events", 0, -1)
            pipe.lrange(f"{key}:event_ids", 0, -1)
        raw = pipe.execute()
        docs = []
        for i in range(0, len(raw), 3):
            h, events, event_ids = raw[i], raw[i + 1], raw[i + 2]
            if not h:
                continue
            docs.append({
                **h,
                "nested_grouping_ids": orjson.loads(h["nested_grouping_ids"]),
                "bucket_start": int(h["bucket_start"]),
                "count": int(h.get("count", 0)),
                "events": [orjson.loads(e) for e in events],
                "event_ids": list(event_ids),
            })
        return docs

    def get_bucket(self, collection: str, bucket_id: str) -> Optional[Bucket]:
        with self._errors():
            docs = self._load(collection, [bucket_id])
        return Bucket.model_validate(docs[0]) if docs else None

    def _matching(self, collection: str, query: BucketQuery) -> List[Dict[str, Any]]:
        lo = query.start if query.start is not None else "-inf"
        hi = query.end if query.end is not None else "+inf"
        with self._errors():
            ids = self.r.zrangebyscore(self._index_key(collection), lo, hi)
            docs = self._load(collection, ids)
        return [d for d in docs if query.matches(d)]

    def find_buckets(self, collection: str, query: BucketQuery, limit: Optional[int] = None, skip: int = 0) -> Page[Bucket]:
        docs = self._matching(collection, query)
        window = docs[skip:skip + limit] if limit is not None else docs[skip:]
        return Page[Bucket](items=[Bucket.model_validate(d) for d in window], total_count=len(docs), limit=limit, skip=skip)

    def aggregate_buckets(self, collection: str, query: BucketQuery) -> List[CountBucket]:
        return counts_by_start(self._matching(collection, query))

    def insert_event(self, collection: str, event: Event) -> str:
        event_id = event.id or uuid.uuid4().hex
        doc = {"id": event_id, "attributes": [kp.model_dump() for kp in event.attributes], "timestamp": event.timestamp}
        with self._errors():
            self.r.rpush(self._events_key(collection), orjson.dumps(doc).decode("utf-8"))
        return event_id

    def list_events(self, collection: str, limit: Optional[int] = None, skip: int = 0) -> Page[StoredEvent]:
        key = self._events_key(collection)
        if limit is not None and limit <= 0:
            with self._errors():
                return Page[StoredEvent](items=[], total_count=int(self.r.llen(key)), limit=limit, skip=skip)
        end = skip + limit - 1 if limit is not None else -1
        with self._errors():
            pipe = self.r.pipeline(transaction=True)
            pipe.llen(key)
            pipe.lrange(key, skip, end)
            total, rows = pipe.execute()
        return Page[StoredEvent](items=[StoredEvent.model_validate(orjson.loads(r)) for r in rows],
                                 total_count=int(total), limit=limit, skip=skip)

    def close(self) -> None:
        self.r.close()
